"""CLI script for taste recommendations and compatibility.

Useful for testing and evaluation. Loads the catalog, then prints a user's
recommendations, their compatibility with another user, similar users or
their genre breakdown.
"""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tastematch.config import get_settings
from tastematch.exceptions import UserNotFoundError
from tastematch.recommender.service import TasteService
from tastematch.recommender.utils import load_stores

# Setup logging
logging.basicConfig(
    level=logging.WARNING,
    format="%(levelname)s: %(message)s"
)
logger = logging.getLogger(__name__)


def print_recommendations(service: TasteService, user_id: str, limit: int) -> None:
    recommendations = service.recommend(user_id, limit)
    print(f"\nRecommendations for user {user_id}:")
    if not recommendations:
        print("  (none)")
    for rank, rec in enumerate(recommendations, start=1):
        score = f"{rec.score:.4f}" if rec.score is not None else "-"
        print(f"  {rank:>2}. {rec.item_id:<24} score={score}  source={rec.source}")


def print_compatibility(service: TasteService, user_id: str, other_id: str) -> None:
    result = service.get_compatibility_result(user_id, other_id)
    print(f"\nCompatibility {user_id} / {other_id}: {result.score} (method: {result.method})")


def print_similar(service: TasteService, user_id: str, limit: int, threshold: float) -> None:
    similar = service.find_similar_users(user_id, limit=limit, threshold=threshold)
    print(f"\nUsers similar to {user_id} (threshold {threshold}):")
    if not similar:
        print("  (none)")
    for other, similarity in similar:
        print(f"  {other:<24} {similarity:.4f}")


def print_genres(service: TasteService, user_id: str) -> None:
    print(f"\nGenre breakdown for user {user_id}:")
    for genre, percent in service.genre_breakdown(user_id).items():
        print(f"  {genre:<16} {percent:5.1f}%")


def main() -> None:
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Query taste recommendations and compatibility",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/recommend_cli.py data user-1
  python scripts/recommend_cli.py data user-1 --limit 5
  python scripts/recommend_cli.py data user-1 --compare user-2
  python scripts/recommend_cli.py data user-1 --similar --genres
        """
    )
    parser.add_argument("data_path", type=str, help="Snapshot directory or CSV data directory")
    parser.add_argument("user_id", type=str, help="User ID to query")
    parser.add_argument("--limit", type=int, default=10, help="Number of recommendations (default: 10)")
    parser.add_argument("--compare", type=str, help="Show compatibility with this user")
    parser.add_argument("--similar", action="store_true", help="Show similar users")
    parser.add_argument("--threshold", type=float, default=0.8, help="Similar-user threshold (default: 0.8)")
    parser.add_argument("--genres", action="store_true", help="Show genre breakdown")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    try:
        stores = load_stores(args.data_path)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    service = TasteService(
        stores.feature_store,
        stores.ownership_store,
        stores.user_store,
        settings=get_settings(),
    )
    try:
        print_recommendations(service, args.user_id, args.limit)
        if args.compare:
            print_compatibility(service, args.user_id, args.compare)
        if args.similar:
            print_similar(service, args.user_id, args.limit, args.threshold)
        if args.genres:
            print_genres(service, args.user_id)
        print()
    except UserNotFoundError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.shutdown()


if __name__ == "__main__":
    main()
