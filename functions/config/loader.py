import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict

from firebase_functions import logger

DEFAULTS = {
    "region": "europe-west4",
    "lowBatteryThreshold": 20,
    "cooldownSeconds": {
        "sos": 0,
        "low_battery": 15 * 60,
        "geofence_entry": 5 * 60,
        "geofence_exit": 5 * 60,
        "info": 0,
    },
    "geofenceRadius": {"min": 50, "max": 5000},
    "pushTimeoutSeconds": 10,
    "minHistoryDistanceMeters": 50,
    "strictDedup": True,
}


@dataclass(frozen=True)
class AlertSettings:
    """Tunables shared by the server triggers and the client pipeline."""
    low_battery_threshold: float = 20
    cooldown_seconds: Dict[str, float] = field(default_factory=lambda: dict(DEFAULTS["cooldownSeconds"]))
    min_radius_m: float = 50
    max_radius_m: float = 5000
    push_timeout_seconds: float = 10
    min_history_distance_m: float = 50
    strict_dedup: bool = True

    def cooldown_for(self, kind) -> float:
        key = getattr(kind, "value", kind)
        return float(self.cooldown_seconds.get(key, 0))


class ConfigLoader:
    _instance = None
    _config = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(ConfigLoader, cls).__new__(cls)
        return cls._instance

    def __init__(self):
        if self._config is None:
            self._load_config()

    def _load_config(self):
        """Load configuration from settings.json, falling back to defaults"""
        config = json.loads(json.dumps(DEFAULTS))
        try:
            script_dir = os.path.dirname(os.path.abspath(__file__))
            config_path = os.path.join(script_dir, 'settings.json')

            with open(config_path, 'r') as f:
                overrides = json.load(f)

            for key, value in overrides.items():
                if isinstance(value, dict) and isinstance(config.get(key), dict):
                    config[key].update(value)
                else:
                    config[key] = value

            logger.info("✅ Configuration loaded successfully")

        except FileNotFoundError:
            logger.warn("settings.json not found, using default alert settings")
        except json.JSONDecodeError as e:
            logger.error(f"❌ Invalid JSON in settings.json: {e}")
        except Exception as e:
            logger.error(f"❌ Error loading config: {e}")

        self._config = config

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def alert_settings(self) -> AlertSettings:
        radius = self._config.get("geofenceRadius", {})
        return AlertSettings(
            low_battery_threshold=float(self._config.get("lowBatteryThreshold", 20)),
            cooldown_seconds=dict(self._config.get("cooldownSeconds", {})),
            min_radius_m=float(radius.get("min", 50)),
            max_radius_m=float(radius.get("max", 5000)),
            push_timeout_seconds=float(self._config.get("pushTimeoutSeconds", 10)),
            min_history_distance_m=float(self._config.get("minHistoryDistanceMeters", 50)),
            strict_dedup=bool(self._config.get("strictDedup", True)),
        )

# Global instance
config = ConfigLoader()

# Convenience functions
def get_region() -> str:
    return config.get("region", "europe-west4")

def get_alert_settings() -> AlertSettings:
    return config.alert_settings()
