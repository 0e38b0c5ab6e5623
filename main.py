"""
Crew Tax Deduction Calculator - command line entry point
"""
import os
import sys
import json
import argparse
import logging
from typing import List, Optional

from config_manager import ConfigManager, get_config_manager
from export import ReportExporter
from models import MalformedDutyRecord, ReferenceDataError
from services import RecordLoader, ReferenceDataService, TaxCalculatorService
from utils import resource_path, setup_logging, to_decimal


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Calculate income-related expenses (Werbungskosten) for airline crew"
    )
    parser.add_argument("records", help="JSON file with flights, nonFlightDays and reimbursements")
    parser.add_argument("--config", help="configuration file (default: tax_config.json)")
    parser.add_argument("--distance", help="one-way distance to the airport in km")
    parser.add_argument("--crew-role", choices=["cockpit", "cabin"], help="selects the short-haul briefing time")
    parser.add_argument("--csv", metavar="PATH", help="write a CSV report")
    parser.add_argument("--excel", metavar="PATH", help="write an Excel report")
    parser.add_argument("--text", metavar="PATH", help="write a text report")
    parser.add_argument("--json", metavar="PATH", help="write the raw result as JSON")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point"""
    args = build_parser().parse_args(argv)

    config_manager = ConfigManager(os.path.abspath(args.config)) if args.config else get_config_manager()
    debug_mode = (args.debug or config_manager.get("app", "debug_mode", False)
                  or config_manager.get("logging", "level") == "DEBUG")
    log_file = config_manager.get("logging", "file_name") if config_manager.get("logging", "file_enabled") else None
    logger = setup_logging(debug_mode, log_file)

    if args.distance is not None:
        try:
            config_manager.set("settings", "distance_to_work_km", str(to_decimal(args.distance, "distance")))
        except ValueError as e:
            logger.error(str(e))
            return 2
    if args.crew_role:
        config_manager.set("settings", "crew_role", args.crew_role)

    issues = config_manager.validate_config()
    if issues:
        for issue in issues:
            logger.error(f"Configuration problem: {issue}")
        return 2

    try:
        reference = ReferenceDataService(
            resource_path(config_manager.get("data", "airport_csv")),
            resource_path(config_manager.get("data", "country_rates_csv")),
        )
        flights, non_flight_days, reimbursements = RecordLoader().load_json(args.records)
    except (ReferenceDataError, MalformedDutyRecord, OSError, ValueError) as e:
        logger.error(f"Could not load input data: {e}")
        return 1

    calculator = TaxCalculatorService(
        reference,
        cache_enabled=config_manager.get("calculation", "cache_enabled", True),
        cache_size=config_manager.get("calculation", "cache_size", 32),
    )
    settings = config_manager.build_settings()
    try:
        result = calculator.calculate(flights, non_flight_days, settings, reimbursements)
    except MalformedDutyRecord as e:
        logger.error(f"Calculation aborted: {e}")
        return 1

    exporter = ReportExporter(
        delimiter=config_manager.get("export", "csv_delimiter", ";"),
        currency_symbol=config_manager.get("export", "currency_symbol", "€"),
    )
    print(exporter.render_text(result), end="")

    ok = True
    if args.csv:
        ok = exporter.export_to_csv(args.csv, result, flights) and ok
    if args.excel:
        ok = exporter.export_to_excel(args.excel, result, flights) and ok
    if args.text:
        ok = exporter.export_to_text(args.text, result) and ok
    if args.json:
        with open(args.json, 'w', encoding='utf-8') as f:
            json.dump(result.to_dict(), f, indent=2, ensure_ascii=False, default=str)
        logging.getLogger(__name__).info(f"JSON result written to {args.json}")

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
