"""
Index every .txt / .md file under a folder into the configured store.

    python scripts/index_folder.py ~/notes --query "dentist appointment"

Uses the OpenAI-compatible embedding endpoint from settings unless
``--hashing`` is given.
"""

import argparse
import asyncio
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from iris_rag import (  # noqa: E402
    DataSource,
    Document,
    HashingEmbeddingOracle,
    HttpEmbeddingOracle,
    RagEngine,
    settings,
)
from iris_rag.logging_setup import setup_logging  # noqa: E402
from iris_rag.models import DocumentFailed, DocumentIndexed, BatchCompleted  # noqa: E402

PATTERNS = ("*.txt", "*.md")


def load_documents(folder: Path):
    documents = []
    for pattern in PATTERNS:
        for path in sorted(folder.rglob(pattern)):
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                print(f"Skipping {path}: {e}")
                continue
            documents.append(
                Document(
                    id=str(path.relative_to(folder)),
                    content=text,
                    source=DataSource.FILE,
                    metadata={"path": str(path)},
                )
            )
    return documents


async def main(args):
    setup_logging(args.log_level)

    if args.hashing:
        oracle = HashingEmbeddingOracle()
    else:
        oracle = HttpEmbeddingOracle()

    documents = load_documents(args.folder)
    print(f"Found {len(documents)} files under {args.folder}.")

    try:
        async with RagEngine(oracle, settings, database_url=args.database_url) as engine:
            async for event in engine.index_documents(documents):
                if isinstance(event, DocumentIndexed):
                    print(f"[{event.progress:3d}%] {event.document_id}: {event.chunk_count} chunks")
                elif isinstance(event, DocumentFailed):
                    print(f"[{event.progress:3d}%] {event.document_id}: FAILED ({event.result.kind})")
                elif isinstance(event, BatchCompleted):
                    print(f"Done: {event.succeeded} indexed, {event.failed} failed.")

            if args.optimize:
                await engine.optimize_index()

            stats = await engine.get_index_stats()
            print(
                f"Store holds {stats.document_count} documents, "
                f"{stats.chunk_count} chunks, {stats.bytes_used} bytes."
            )

            if args.query:
                hits = await engine.search(args.query, limit=args.limit)
                for hit in hits:
                    preview = hit.text.replace("\n", " ")[:100]
                    print(f"{hit.score:.3f}  {hit.id}  {preview}")
    finally:
        await oracle.aclose()


def parse_args():
    parser = argparse.ArgumentParser(description=__doc__.strip().splitlines()[0])
    parser.add_argument("folder", type=Path)
    parser.add_argument("--query", help="Run a search after indexing.")
    parser.add_argument("--limit", type=int, default=settings.default_search_limit)
    parser.add_argument("--database-url", default=None)
    parser.add_argument("--hashing", action="store_true", help="Use the offline hashing oracle.")
    parser.add_argument("--optimize", action="store_true", help="Run optimize_index afterwards.")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args()


if __name__ == "__main__":
    asyncio.run(main(parse_args()))
