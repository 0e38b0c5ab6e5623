"""
Export functionality for deduction reports
Supports Excel, CSV, and formatted text exports
"""
import csv
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

import pandas as pd
import openpyxl
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.utils.dataframe import dataframe_to_rows

from models import Flight, TaxCalculation
from utils import format_currency, format_minutes, is_overnight, parse_block_time


class ReportExporter:
    """Class for exporting deduction reports in various formats"""

    def __init__(self, delimiter: str = ";", currency_symbol: str = "€"):
        self.delimiter = delimiter
        self.currency_symbol = currency_symbol
        self.logger = logging.getLogger(__name__)

    def money(self, amount) -> str:
        return format_currency(amount, self.currency_symbol)

    @staticmethod
    def format_arrival_time(flight: Flight) -> str:
        """Arrival clock time, marked +1 when the flight lands the next day"""
        if is_overnight(flight.departure_time, flight.arrival_time):
            return f"{flight.arrival_time}+1"
        return flight.arrival_time

    def flights_dataframe(self, flights: Sequence[Flight]) -> pd.DataFrame:
        rows = [{
            'Datum': flight.date.strftime('%d.%m.%Y'),
            'Flug': flight.flight_number,
            'Von': flight.departure,
            'Nach': flight.arrival,
            'Abflug': flight.departure_time,
            'Ankunft': self.format_arrival_time(flight),
            'Blockzeit': format_minutes(parse_block_time(flight.block_time)),
            'Muster': flight.aircraft_type or '',
            'Dienst': flight.duty_code or '',
        } for flight in flights]
        return pd.DataFrame(rows, columns=['Datum', 'Flug', 'Von', 'Nach', 'Abflug', 'Ankunft',
                                           'Blockzeit', 'Muster', 'Dienst'])

    def monthly_dataframe(self, result: TaxCalculation) -> pd.DataFrame:
        rows = [{
            'Monat': f"{m.month_name} {m.year}",
            'Flugstunden': f"{m.flight_hours:.2f}".replace('.', ','),
            'Arbeitstage': m.work_days,
            'Fahrten': m.trips,
            'Entfernungspauschale': self.money(m.distance_deduction),
            'Verpflegung': self.money(m.meal_allowance),
            'AG-Erstattung': self.money(m.employer_reimbursement),
            'Trinkgelder': self.money(m.tips),
            'Reinigung': self.money(m.cleaning_costs),
        } for m in result.monthly]
        return pd.DataFrame(rows)

    def allowances_dataframe(self, result: TaxCalculation) -> pd.DataFrame:
        rows = [{
            'Datum': info.date.strftime('%d.%m.%Y'),
            'Tag': info.role.value,
            'Land': info.country_name,
            'Ort': info.city or info.location or '',
            'Abwesenheit': format_minutes(info.absence_minutes),
            'Satz': 'voll' if info.rate_type.value == 'full' else 'teilweise',
            'Betrag': self.money(info.rate),
        } for info in result.daily_allowances.values()]
        return pd.DataFrame(rows)

    def summary_rows(self, result: TaxCalculation) -> List[Tuple[str, str]]:
        meal = result.meal_allowances
        travel = result.travel_costs
        rows = [
            ("Verpflegungsmehraufwand", self.money(meal.total_allowances)),
            ("Arbeitgebererstattung", self.money(meal.employer_reimbursement)),
            ("Differenz (abziehbar)", self.money(meal.deductible_difference)),
        ]
        if meal.excess_reimbursement:
            rows.append(("Erstattung über Pauschalen", self.money(meal.excess_reimbursement)))
        rows.extend([
            (f"Entfernungspauschale ({travel.trips} Fahrten, {travel.total_km} km)", self.money(travel.total)),
            (f"Reinigungskosten ({result.cleaning_costs.work_days} Tage)", self.money(result.cleaning_costs.total)),
            (f"Trinkgelder ({result.travel_expenses.hotel_nights} Nächte)", self.money(result.travel_expenses.total)),
            ("Gesamt", self.money(result.grand_total)),
        ])
        return rows

    def export_to_csv(self, filepath: str, result: TaxCalculation, flights: Sequence[Flight] = ()) -> bool:
        """
        Export report to CSV format

        Args:
            filepath: Output file path
            result: Calculation results
            flights: Flights shown in the flight table

        Returns:
            True if successful, False otherwise
        """
        try:
            export_data = [['=== ZUSAMMENFASSUNG ===']]
            export_data.extend([label, value] for label, value in self.summary_rows(result))
            export_data.append([''])

            for title, df in (('=== MONATE ===', self.monthly_dataframe(result)),
                              ('=== VERPFLEGUNG ===', self.allowances_dataframe(result)),
                              ('=== FLÜGE ===', self.flights_dataframe(flights))):
                export_data.append([title])
                export_data.append(list(df.columns))
                export_data.extend(df.astype(str).values.tolist())
                export_data.append([''])

            with open(filepath, 'w', newline='', encoding='utf-8') as csvfile:
                writer = csv.writer(csvfile, delimiter=self.delimiter)
                writer.writerows(export_data)

            self.logger.info(f"CSV report written to {filepath}")
            return True

        except Exception:
            self.logger.exception(f"CSV export to {filepath} failed")
            return False

    def export_to_excel(self, filepath: str, result: TaxCalculation, flights: Sequence[Flight] = ()) -> bool:
        """Export report to Excel format with one sheet per table"""
        try:
            workbook = openpyxl.Workbook()

            self._create_summary_sheet(workbook, result)
            self._create_table_sheet(workbook, "Monate", self.monthly_dataframe(result))
            self._create_table_sheet(workbook, "Verpflegung", self.allowances_dataframe(result))
            self._create_table_sheet(workbook, "Flüge", self.flights_dataframe(flights))

            workbook.save(filepath)
            self.logger.info(f"Excel report written to {filepath}")
            return True

        except Exception:
            self.logger.exception(f"Excel export to {filepath} failed")
            return False

    def _create_summary_sheet(self, workbook: openpyxl.Workbook, result: TaxCalculation):
        """Create summary sheet in Excel workbook"""
        ws = workbook.active
        ws.title = "Zusammenfassung"

        ws['A1'] = "WERBUNGSKOSTEN FLUGPERSONAL"
        ws['A1'].font = Font(bold=True, size=14)
        ws.merge_cells('A1:C1')

        row = 3
        for label, value in self.summary_rows(result):
            ws[f'A{row}'] = label
            ws[f'B{row}'] = value
            if label == "Gesamt":
                ws[f'A{row}'].font = Font(bold=True)
                ws[f'B{row}'].font = Font(bold=True, color="2F5496")
            row += 1

        row += 1
        ws[f'A{row}'] = "Verpflegung nach Ländern"
        ws[f'A{row}'].font = Font(bold=True)
        row += 1
        for entry in result.meal_allowances.by_country:
            ws[f'A{row}'] = entry.display_name
            ws[f'B{row}'] = f"{entry.partial_days} x teilweise, {entry.full_days} x voll"
            ws[f'C{row}'] = self.money(entry.total)
            row += 1

        self._autosize(ws, 50)

    def _create_table_sheet(self, workbook: openpyxl.Workbook, title: str, df: pd.DataFrame):
        ws = workbook.create_sheet(title)

        for r in dataframe_to_rows(df, index=False, header=True):
            ws.append(r)

        for cell in ws[1]:
            cell.font = Font(bold=True)

        self._autosize(ws, 30)

    @staticmethod
    def _autosize(ws, limit: int) -> None:
        for column in ws.columns:
            max_length = 0
            for cell in column:
                if cell.value:
                    max_length = max(max_length, len(str(cell.value)))
            ws.column_dimensions[get_column_letter(column[0].column)].width = min(max_length + 2, limit)

    def render_text(self, result: TaxCalculation, generated: Optional[datetime] = None) -> str:
        """Formatted plain-text report"""
        generated = generated or datetime.now()
        lines = [
            "=" * 72,
            "WERBUNGSKOSTEN FLUGPERSONAL",
            "=" * 72,
            f"Erstellt am: {generated.strftime('%d.%m.%Y %H:%M')}",
            "",
            "ZUSAMMENFASSUNG",
            "-" * 72,
        ]
        lines.extend(f"{label + ':':<50} {value:>20}" for label, value in self.summary_rows(result))
        lines.append("")

        lines.append("VERPFLEGUNG NACH LÄNDERN")
        lines.append("-" * 72)
        for entry in result.meal_allowances.by_country:
            days = f"{entry.partial_days}T/{entry.full_days}V"
            lines.append(f"{entry.display_name[:40]:<42} {days:>9} {self.money(entry.total):>19}")
        lines.append("")

        lines.append("MONATSÜBERSICHT")
        lines.append("-" * 72)
        lines.append(f"{'Monat':<16} {'Std':>7} {'AT':>4} {'Fahrten':>7} {'Verpfl.':>12} {'Gesamt':>14}")
        for m in result.monthly:
            month_total = m.distance_deduction + m.meal_allowance + m.tips + m.cleaning_costs
            lines.append(f"{m.month_name + ' ' + str(m.year):<16} {m.flight_hours:>7} {m.work_days:>4} "
                         f"{m.trips:>7} {format_currency(m.meal_allowance, ''):>12} "
                         f"{format_currency(month_total, ''):>14}")

        if result.warnings:
            lines.append("")
            lines.append("HINWEISE")
            lines.append("-" * 72)
            lines.extend(f"- {w.message}" for w in result.warnings)

        lines.append("-" * 72)
        return "\n".join(lines) + "\n"

    def export_to_text(self, filepath: str, result: TaxCalculation) -> bool:
        """Export report to formatted text file"""
        try:
            with open(filepath, 'w', encoding='utf-8') as f:
                f.write(self.render_text(result))
            self.logger.info(f"Text report written to {filepath}")
            return True

        except Exception:
            self.logger.exception(f"Text export to {filepath} failed")
            return False
