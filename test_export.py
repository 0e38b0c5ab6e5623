#!/usr/bin/env python3
"""
Tests for report exports, formatting helpers and the configuration manager
"""

import json
from datetime import date, datetime
from decimal import Decimal

import openpyxl
import pytest

from config_manager import ConfigManager, get_config
from export import ReportExporter
from main import main
from utils import format_currency, format_minutes


@pytest.fixture
def new_york_result(calculator, settings, new_york_trip):
    return calculator.calculate(new_york_trip, [], settings)


class TestFormatting:
    """German number and time formatting"""

    def test_format_currency(self):
        assert format_currency(Decimal("1234.5")) == "1.234,50 €"
        assert format_currency(Decimal("0.385")) == "0,39 €"
        assert format_currency(Decimal("14"), "") == "14,00"

    def test_format_minutes(self):
        assert format_minutes(525) == "8:45"
        assert format_minutes(5) == "0:05"

    def test_overnight_arrival_marker(self, make_flight):
        overnight = make_flight(date(2025, 1, 1), "FRA", "JFK", "22:10", "06:30")
        same_day = make_flight(date(2025, 1, 1), "FRA", "MUC", "07:00", "08:00")

        assert ReportExporter.format_arrival_time(overnight) == "06:30+1"
        assert ReportExporter.format_arrival_time(same_day) == "08:00"


class TestReportExporter:
    """CSV, Excel and text reports"""

    def test_text_report(self, new_york_result):
        text = ReportExporter().render_text(new_york_result, generated=datetime(2026, 1, 31, 12, 0))

        assert "Erstellt am: 31.01.2026 12:00" in text
        assert "USA - New York" in text
        assert "250,00 €" in text
        assert "März 2025" in text

    def test_csv_export(self, tmp_path, new_york_result, new_york_trip):
        path = tmp_path / "report.csv"

        assert ReportExporter().export_to_csv(str(path), new_york_result, new_york_trip)

        content = path.read_text(encoding="utf-8")
        assert "=== ZUSAMMENFASSUNG ===" in content
        assert "Gesamt;250,00 €" in content
        assert "LH401" in content

    def test_excel_export(self, tmp_path, new_york_result, new_york_trip):
        path = tmp_path / "report.xlsx"

        assert ReportExporter().export_to_excel(str(path), new_york_result, new_york_trip)

        workbook = openpyxl.load_workbook(path)
        assert workbook.sheetnames == ["Zusammenfassung", "Monate", "Verpflegung", "Flüge"]
        assert workbook["Flüge"].max_row == 3
        assert workbook["Verpflegung"].max_row == 5

    def test_excel_summary_with_merged_title(self, tmp_path, new_york_result):
        path = tmp_path / "report.xlsx"

        assert ReportExporter().export_to_excel(str(path), new_york_result)

        summary = openpyxl.load_workbook(path)["Zusammenfassung"]
        assert "A1:C1" in [str(r) for r in summary.merged_cells.ranges]
        assert summary["A1"].value == "WERBUNGSKOSTEN FLUGPERSONAL"
        assert summary.column_dimensions["C"].width > 2

    def test_text_export(self, tmp_path, new_york_result):
        path = tmp_path / "report.txt"

        assert ReportExporter().export_to_text(str(path), new_york_result)
        assert "WERBUNGSKOSTEN FLUGPERSONAL" in path.read_text(encoding="utf-8")

    def test_export_to_missing_directory_fails(self, tmp_path, new_york_result):
        missing = tmp_path / "missing" / "report"
        exporter = ReportExporter()

        assert not exporter.export_to_csv(str(missing) + ".csv", new_york_result)
        assert not exporter.export_to_excel(str(missing) + ".xlsx", new_york_result)
        assert not exporter.export_to_text(str(missing) + ".txt", new_york_result)

    def test_csv_with_custom_delimiter_and_symbol(self, tmp_path, new_york_result):
        path = tmp_path / "report.csv"

        assert ReportExporter(delimiter=",", currency_symbol="EUR").export_to_csv(str(path), new_york_result)

        assert "Gesamt,\"250,00 EUR\"" in path.read_text(encoding="utf-8")

    def test_warnings_are_listed(self, calculator, settings, make_flight):
        flights = [make_flight(date(2025, 6, 10), "FRA", "XYZ", "08:00", "12:00")]
        result = calculator.calculate(flights, [], settings)

        text = ReportExporter().render_text(result)

        assert "HINWEISE" in text
        assert "Unknown airport XYZ" in text


class TestConfigManager:
    """File-based configuration"""

    def test_defaults_build_settings(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "tax_config.json"))

        settings = manager.build_settings()

        assert settings.distance_to_work_km == Decimal("30")
        assert settings.crew_role == "cockpit"
        assert "FL" in settings.workday_duty_codes
        assert manager.validate_config() == []

    def test_save_and_reload(self, tmp_path):
        path = str(tmp_path / "tax_config.json")
        manager = ConfigManager(path)
        manager.set("settings", "distance_to_work_km", "42,5")
        manager.set("settings", "crew_role", "cabin")

        assert manager.save_config()

        reloaded = ConfigManager(path).build_settings()
        assert reloaded.distance_to_work_km == Decimal("42.5")
        assert reloaded.crew_role == "cabin"

    def test_invalid_values_are_reported(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "tax_config.json"))
        manager.update_section("settings", {
            "crew_role": "purser",
            "tip_per_night": "abc",
            "workday_duty_codes": ["ME", "ZZ"],
        })
        manager.set("calculation", "cache_size", 0)

        issues = manager.validate_config()

        assert len(issues) == 4

    def test_module_level_accessor(self):
        assert get_config("calculation", "cache_size") == 32
        assert get_config("calculation", "missing", "fallback") == "fallback"

    def test_broken_file_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "tax_config.json"
        path.write_text("{not json", encoding="utf-8")

        manager = ConfigManager(str(path))

        assert manager.get("settings", "crew_role") == "cockpit"


class TestCommandLine:
    """End-to-end run of the command line entry point"""

    def test_main_writes_reports(self, tmp_path, capsys):
        records = tmp_path / "records.json"
        records.write_text(json.dumps({
            "flights": [
                {"date": "2025-05-05", "flightNumber": "LH1000", "departure": "FRA", "arrival": "LHR",
                 "departureTime": "09:00", "arrivalTime": "09:45", "blockTime": "1:45"},
                {"date": "2025-05-07", "flightNumber": "LH1001", "departure": "LHR", "arrival": "FRA",
                 "departureTime": "17:00", "arrivalTime": "19:45", "blockTime": "1:45"},
            ],
            "nonFlightDays": [{"date": "2025-05-06", "type": "FL", "country": "GB"}],
            "reimbursements": [],
        }), encoding="utf-8")
        config = tmp_path / "tax_config.json"
        config.write_text(json.dumps({"logging": {"file_enabled": False}}), encoding="utf-8")
        output = tmp_path / "result.json"

        exit_code = main([str(records), "--config", str(config), "--json", str(output)])

        assert exit_code == 0
        assert "Grossbritannien - London" in capsys.readouterr().out
        data = json.loads(output.read_text(encoding="utf-8"))
        assert data["mealAllowances"]["totalAllowances"] == "154"
        assert data["travelCosts"]["trips"] == 2

    def test_main_rejects_malformed_records(self, tmp_path):
        records = tmp_path / "records.json"
        records.write_text(json.dumps({"flights": [{"date": "2025-05-05"}]}), encoding="utf-8")
        config = tmp_path / "tax_config.json"
        config.write_text(json.dumps({"logging": {"file_enabled": False}}), encoding="utf-8")

        assert main([str(records), "--config", str(config)]) == 1

    def test_main_rejects_invalid_config(self, tmp_path):
        records = tmp_path / "records.json"
        records.write_text("{}", encoding="utf-8")
        config = tmp_path / "tax_config.json"
        config.write_text(json.dumps({"logging": {"file_enabled": False, "level": "LOUD"}}), encoding="utf-8")

        assert main([str(records), "--config", str(config)]) == 2
