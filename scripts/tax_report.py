#!/usr/bin/env python3
"""
Compute the monthly capital-gains tax report for an operation history.

This script:
1. Loads operations from a CSV or JSON file
2. Loads the tax rule table from the configuration file
3. Replays the full history and computes the requested month (or year)
4. Prints the JSON report and a short summary

Usage:
    python scripts/tax_report.py --operations FILE --month YYYY-MM [--config PATH] [--output PATH]

Examples:
    # Report for March 2024
    python scripts/tax_report.py --operations data/operations.csv --month 2024-03

    # Every month of 2024, written to a file
    python scripts/tax_report.py --operations data/operations.json --year 2024 --output reports/2024.json

    # Export the loss carryforward audit trail as well
    python scripts/tax_report.py --operations data/operations.csv --month 2024-03 --audit-trail audit.yaml
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime

import yaml

# Add the project root to the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from tax_engine.exceptions import TaxEngineError
from tax_engine.loader import OperationLoader
from tax_engine.loss_manager import LossCarryforwardManager
from tax_engine.tax_engine import TaxEngine, parse_month


def setup_logging(level=logging.INFO):
    """Set up logging configuration."""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stderr)
        ]
    )


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Compute the monthly capital-gains tax report',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/tax_report.py --operations data/operations.csv --month 2024-03
  python scripts/tax_report.py --operations data/operations.json --year 2024 --output reports/2024.json
        """
    )

    parser.add_argument(
        '--operations',
        type=str,
        required=True,
        help='CSV or JSON file with the operation history'
    )

    target = parser.add_mutually_exclusive_group()
    target.add_argument(
        '--month',
        type=str,
        help='Target month in format YYYY-MM (default: current month)'
    )
    target.add_argument(
        '--year',
        type=int,
        help='Compute all twelve months of a year'
    )

    parser.add_argument(
        '--config',
        type=str,
        default='config/settings.yaml',
        help='Configuration file with the tax rule table (default: config/settings.yaml)'
    )

    parser.add_argument(
        '--asset-type',
        type=str,
        help='Asset type for records that do not carry one'
    )

    parser.add_argument(
        '--output',
        type=str,
        help='Write the JSON report to this file instead of stdout'
    )

    parser.add_argument(
        '--audit-trail',
        type=str,
        help='Write the loss carryforward audit trail (YAML) to this file'
    )

    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    return parser.parse_args(argv)


def print_summary(result):
    """Print a short summary of one monthly report."""
    summary = result.summary
    print("\n" + "=" * 60, file=sys.stderr)
    print(f"TAX REPORT {result.month}", file=sys.stderr)
    print("=" * 60, file=sys.stderr)
    print(f"Total sales:   R$ {summary.total_sales:,.2f}", file=sys.stderr)
    print(f"Net result:    R$ {summary.net_result:,.2f}", file=sys.stderr)
    print(f"IRRF credit:   R$ {summary.irrf:,.2f}", file=sys.stderr)
    print(f"Tax payable:   R$ {summary.tax_payable:,.2f}", file=sys.stderr)
    if summary.darf_codes:
        print(f"DARF codes:    {', '.join(summary.darf_codes)}", file=sys.stderr)
    for asset_type, balance in result.accumulated_losses.items():
        if balance != 0:
            print(f"Loss balance {asset_type.value}: R$ {balance:,.2f}", file=sys.stderr)
    for diagnostic in result.diagnostics:
        print(f"⚠️  {diagnostic.error} [{diagnostic.scope} {diagnostic.subject}]: {diagnostic.message}",
              file=sys.stderr)


def main(argv=None):
    """Main function."""
    args = parse_arguments(argv)
    setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger = logging.getLogger(__name__)

    try:
        engine = TaxEngine.from_config(args.config)
        operations = OperationLoader(default_asset_type=args.asset_type).load(args.operations)

        loss_manager = LossCarryforwardManager(engine.loss_offset_order)

        if args.year is not None:
            results = engine.calculate_year(operations, args.year, loss_manager=loss_manager)
            payload = [r.to_dict() for r in results]
        else:
            month = args.month or datetime.now().strftime('%Y-%m')
            parse_month(month)
            results = [engine.calculate_month(operations, month, loss_manager=loss_manager)]
            payload = results[0].to_dict()

        if args.audit_trail:
            loss_manager.export_audit_trail(args.audit_trail)

    except (TaxEngineError, FileNotFoundError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Tax report failed: {e}")
        return 1

    rendered = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    if args.output:
        os.makedirs(os.path.dirname(os.path.abspath(args.output)), exist_ok=True)
        with open(args.output, 'w', encoding='utf-8') as f:
            f.write(rendered + "\n")
        logger.info(f"Report written to {args.output}")
    else:
        print(rendered)

    for result in results:
        if result.summary.total_sales or result.diagnostics:
            print_summary(result)

    return 0


if __name__ == "__main__":
    sys.exit(main())
