#!/usr/bin/env python3
"""
Poll Sites — Fetches the latest USGS instantaneous values for every active
site (or the given sites) and stores them as current observations.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import argparse
import logging

from services.telemetry_service import TelemetryService

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("poll_sites")


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--site", action="append", dest="sites", help="USGS site code (repeatable)")
    args = parser.parse_args(argv)

    poller = TelemetryService()

    if args.sites:
        results = [poller.poll_site(code) for code in args.sites]
        succeeded = sum(1 for r in results if r["success"])
        for r in results:
            if not r["success"]:
                print(f"  ❌ {r['error']['message']}", file=sys.stderr)
        print(f"[POLL SITES] Polled {succeeded}/{len(results)} sites")
        print(f"RECORDS_AFFECTED={succeeded}")
        return 0 if succeeded == len(results) else 1

    result = poller.poll_all_sites()
    if not result["success"]:
        print(f"[ERROR] {result['error']['message']}", file=sys.stderr)
        return 1

    data = result["data"]
    for failure in data["failed"]:
        print(f"  ⚠️  {failure['site_code']}: {failure['error']['message']}", file=sys.stderr)
    print(f"[POLL SITES] Polled {data['succeeded']}/{data['sites']} sites")
    print(f"RECORDS_AFFECTED={data['succeeded']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
