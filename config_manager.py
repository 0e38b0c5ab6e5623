"""
Configuration management system for user settings and calculation options
"""
import json
import os
import logging
from typing import Dict, Any, List

from config import TaxConfig
from models import Settings
from utils import resource_path, to_decimal


class ConfigManager:
    """Manages application configuration with file-based persistence"""

    def __init__(self, config_file: str = "tax_config.json"):
        self.config_file = config_file if os.path.isabs(config_file) else resource_path(config_file)
        self.config: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)
        self._load_config()

    def _load_config(self):
        """Load configuration from file"""
        # Default configuration
        self.config = {
            "app": {
                "version": "1.0",
                "title": "Crew Tax Deduction Calculator",
                "debug_mode": False
            },
            "settings": {
                "distance_to_work_km": "30",
                "commute_minutes_override": None,
                "cleaning_cost_per_day": "1.60",
                "tip_per_night": "3.60",
                "workday_duty_codes": sorted(TaxConfig.GROUND_DUTY_CODES | {TaxConfig.ABROAD_DAY_CODE}),
                "count_ground_duty_as_trip": True,
                "crew_role": "cockpit"
            },
            "calculation": {
                "cache_enabled": True,
                "cache_size": 32
            },
            "export": {
                "csv_delimiter": ";",
                "currency_symbol": "€"
            },
            "logging": {
                "level": "INFO",
                "file_enabled": True,
                "file_name": "tax_calculator.log"
            },
            "data": {
                "airport_csv": "data/airports.csv",
                "country_rates_csv": "data/country_rates.csv"
            }
        }

        # Try to load from file
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    file_config = json.load(f)
                    self._merge_config(file_config)
                self.logger.info(f"Configuration loaded from {self.config_file}")
            except (OSError, ValueError) as e:
                self.logger.warning(f"Could not load config file: {e}, using defaults")

    def _merge_config(self, file_config: Dict[str, Any]):
        """Merge file configuration with defaults"""
        for section, values in file_config.items():
            if section in self.config and isinstance(values, dict):
                self.config[section].update(values)
            else:
                self.config[section] = values

    def save_config(self) -> bool:
        """Save current configuration to file"""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            self.logger.info(f"Configuration saved to {self.config_file}")
            return True
        except OSError as e:
            self.logger.error(f"Could not save config file: {e}")
            return False

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get configuration value"""
        return self.config.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set configuration value"""
        if section not in self.config:
            self.config[section] = {}
        self.config[section][key] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Get entire configuration section"""
        return self.config.get(section, {}).copy()

    def update_section(self, section: str, values: Dict[str, Any]) -> None:
        """Update entire configuration section"""
        if section not in self.config:
            self.config[section] = {}
        self.config[section].update(values)

    def build_settings(self) -> Settings:
        """Create calculation settings from the settings section"""
        section = self.get_section("settings")
        override = section.get("commute_minutes_override")
        return Settings(
            distance_to_work_km=to_decimal(section.get("distance_to_work_km", "0"), "distance_to_work_km"),
            commute_minutes_override=int(override) if override is not None else None,
            cleaning_cost_per_day=to_decimal(section.get("cleaning_cost_per_day", "1.60"), "cleaning_cost_per_day"),
            tip_per_night=to_decimal(section.get("tip_per_night", "3.60"), "tip_per_night"),
            workday_duty_codes=frozenset(section.get("workday_duty_codes", [])),
            count_ground_duty_as_trip=bool(section.get("count_ground_duty_as_trip", True)),
            crew_role=section.get("crew_role", "cockpit"),
        )

    def validate_config(self) -> List[str]:
        """Validate configuration and return list of issues"""
        issues = []

        # Validate settings section
        settings = self.get_section("settings")
        for key in ("distance_to_work_km", "cleaning_cost_per_day", "tip_per_night"):
            try:
                to_decimal(settings.get(key), key)
            except ValueError:
                issues.append(f"Invalid {key} in settings section")

        if settings.get("crew_role") not in TaxConfig.CREW_ROLES:
            issues.append(f"Invalid crew_role, must be one of: {list(TaxConfig.CREW_ROLES)}")

        unknown_codes = set(settings.get("workday_duty_codes", [])) - set(TaxConfig.DUTY_CODES)
        if unknown_codes:
            issues.append(f"Unknown duty codes in workday_duty_codes: {sorted(unknown_codes)}")

        override = settings.get("commute_minutes_override")
        if override is not None and (not isinstance(override, int) or override < 0):
            issues.append("Invalid commute_minutes_override in settings section")

        # Validate calculation section
        calc_config = self.get_section("calculation")
        cache_size = calc_config.get("cache_size", 0)
        if not isinstance(cache_size, int) or cache_size <= 0:
            issues.append("Invalid cache_size in calculation section")

        # Validate logging section
        log_config = self.get_section("logging")
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if log_config.get("level") not in valid_levels:
            issues.append(f"Invalid logging level, must be one of: {valid_levels}")

        return issues


# Global configuration instance
_config_manager = None


def get_config_manager() -> ConfigManager:
    """Get or create the global configuration manager"""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_config(section: str, key: str, default: Any = None) -> Any:
    """Convenience function to get configuration value"""
    return get_config_manager().get(section, key, default)
