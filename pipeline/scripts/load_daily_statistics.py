#!/usr/bin/env python3
"""
Load Daily Statistics — Downloads the USGS daily flow percentiles (RDB) for
active sites into statistics_daily. Run after new sites are registered and
then yearly; the baseline changes slowly.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import argparse
import logging

from services.statistics_service import StatisticsService

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("load_daily_statistics")


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--site", action="append", dest="sites", help="USGS site code (repeatable)")
    args = parser.parse_args(argv)

    loader = StatisticsService()

    if args.sites:
        results = [loader.load_site(code) for code in args.sites]
    else:
        summary = loader.populate_all_site_statistics()
        if not summary["success"]:
            print(f"[ERROR] {summary['error']['message']}", file=sys.stderr)
            return 1
        data = summary["data"]
        for failure in data["failed"]:
            print(f"  ⚠️  {failure['site_code']}: {failure['error']['message']}", file=sys.stderr)
        print(f"[LOAD STATISTICS] Loaded statistics for {data['succeeded']}/{data['sites']} sites")
        print(f"RECORDS_AFFECTED={data['succeeded']}")
        return 0

    succeeded = 0
    for r in results:
        if r["success"]:
            succeeded += 1
            print(f"  ✅ {r['data']['site_code']}: {r['data']['days_stored']} days")
        else:
            print(f"  ❌ {r['error']['message']}", file=sys.stderr)
    print(f"RECORDS_AFFECTED={succeeded}")
    return 0 if succeeded == len(results) else 1


if __name__ == "__main__":
    sys.exit(main())
