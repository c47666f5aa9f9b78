"""Recompute taste embeddings in bulk.

Loads the catalog (snapshot or CSV directory) and recomputes the embedding of
every user, or of the users given on the command line, reporting progress
per batch.

Example:
    $ python scripts/refresh_embeddings.py data
    $ python scripts/refresh_embeddings.py data --users user-1 user-2
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tastematch.config import get_settings
from tastematch.recommender.embed import DEFAULT_REFRESH_BATCH_SIZE
from tastematch.recommender.service import TasteService
from tastematch.recommender.utils import load_stores


def main() -> int:
    """Main entry point for the refresh script.

    Returns:
        Exit code: 0 if every user was refreshed, 1 otherwise.
    """
    parser = argparse.ArgumentParser(description="Recompute user taste embeddings")
    parser.add_argument("data_path", type=str, help="Snapshot directory or CSV data directory")
    parser.add_argument("--users", nargs="+", help="Only refresh these user ids")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEFAULT_REFRESH_BATCH_SIZE,
        help=f"Users per progress report (default: {DEFAULT_REFRESH_BATCH_SIZE})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        stores = load_stores(args.data_path)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    service = TasteService(
        stores.feature_store,
        stores.ownership_store,
        stores.user_store,
        settings=get_settings(),
    )
    try:
        if args.users:
            results = service.refresh_embeddings(args.users)
            print(f"Refreshed: {len(results['success'])}, failed: {len(results['failed'])}")
            if results["failed"]:
                print(f"  Failed users: {', '.join(results['failed'])}")
            return 0 if not results["failed"] else 1

        results = service.refresh_all_embeddings(batch_size=args.batch_size)
        print(
            f"Processed {results['processed']} of {results['total']} users "
            f"({results['failed']} failed)"
        )
        return 0 if results["failed"] == 0 else 1
    finally:
        service.shutdown()


if __name__ == "__main__":
    sys.exit(main())
