# scripts/debug_leaderboard.py
import sys
from pathlib import Path
import logging

# Make repo root importable so "import weekly_points" works
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from weekly_points.config import Settings
from weekly_points.handler import LeaderboardService
from weekly_points.periods import period_label

def main():
    logging.basicConfig(level=logging.DEBUG, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    settings = Settings.from_env()
    print("Contract:", settings.contract_address)
    print("Endpoints:", ", ".join(settings.rpc_urls))

    service = LeaderboardService.from_settings(settings)
    result = service.refresh()

    print("Week:", period_label(result["current_period_start"]), "previous:", period_label(result["previous_period_start"]))
    for i, row in enumerate(result["current_ranking"][:10], start=1):
        print(f"{i:>3}. {row['address']}  {row['points']}")
    print("Meta:", result["meta"])

if __name__ == "__main__":
    main()
