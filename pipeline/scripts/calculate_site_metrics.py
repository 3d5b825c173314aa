#!/usr/bin/env python3
"""
Calculate Site Metrics — Recomputes flow z-score, status and 6h trend for
every active flow site and upserts the derived_metrics table.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import argparse
import logging

from services.metrics_service import MetricsService

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("calculate_site_metrics")


def main(argv=None):
    parser = argparse.ArgumentParser()
    parser.add_argument("--site-id", type=int, help="Only recompute this site")
    args = parser.parse_args(argv)

    metrics = MetricsService()

    if args.site_id is not None:
        try:
            row = metrics.update_derived_metrics(args.site_id)
        except Exception as e:
            print(f"[ERROR] {e}", file=sys.stderr)
            return 1
        print(f"[CALCULATE METRICS] Site {args.site_id}: {row['flow_status']} / {row['flow_trend']}")
        print("RECORDS_AFFECTED=1")
        return 0

    result = metrics.update_all_site_metrics()
    if not result["success"]:
        print(f"[ERROR] {result['error']['message']}", file=sys.stderr)
        return 1

    data = result["data"]
    print(f"[CALCULATE METRICS] Calculated metrics for {data['succeeded']}/{data['sites']} sites")
    print(f"RECORDS_AFFECTED={data['succeeded']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
