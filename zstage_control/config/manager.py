"""
Configuration Manager for Z-stage control
Handles loading, saving, and accessing stage configurations
stored as YAML files.
"""

import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List
from copy import deepcopy
import logging

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: Dict[str, Any] = {
    "stage": {
        "limits": {
            "x_um": {"low": None, "high": None},
            "y_um": {"low": None, "high": None},
            "z_um": {"low": None, "high": None},
        },
        "position_tolerance_um": 0.01,
        "max_step_um": 1000.0,
        "min_step_um": 0.01,
        "settle_time_s": 0.2,
        "step_sizes_um": [0.1, 0.5, 1.0, 5.0, 10.0, 50.0],
        "default_step_um": 1.0,
        "z_stage": None,
    },
    "autostep": {
        "min_step_um": 0.01,
        "max_step_um": 1000.0,
        "min_steps": 1,
        "max_steps": 1000,
        "min_delay_s": 0.1,
        "max_delay_s": 10.0,
        "default_step_um": 10.0,
        "default_steps": 10,
        "default_delay_s": 0.5,
    },
    "metrics": {
        "registered": ["Std Dev", "Mean", "Max"],
        "default": "Std Dev",
    },
    "timers": {
        "position_refresh_s": 0.5,
        "metric_refresh_s": 1.0,
    },
    "bookmarks": {
        "metadata_file": None,
    },
    "hardware": {
        "min_mmcore_version": "10.0.0",
    },
}

_REQUIRED_SECTIONS = ["stage", "autostep", "metrics", "timers"]


def get_default_settings() -> Dict[str, Any]:
    """Return a private copy of the built-in settings."""
    return deepcopy(DEFAULT_SETTINGS)


class ConfigManager:
    """
    Manages stage configurations.
    Works directly with YAML configuration files; every configuration is
    overlaid on DEFAULT_SETTINGS by get_settings().
    """

    def __init__(self, config_dir: Optional[str] = None):
        """
        Initialize ConfigManager with configuration directory.

        Args:
            config_dir: Path to configuration directory. If None, uses the
                       'configurations' folder shipped with the package.
        """
        if config_dir is None:
            package_dir = Path(__file__).parent.parent  # zstage_control/
            self.config_dir = package_dir / "configurations"
        else:
            self.config_dir = Path(config_dir)

        self._configs: Dict[str, Dict[str, Any]] = {}
        self._current_config_name: Optional[str] = None
        self._load_configs()
        logger.info(f"ConfigManager initialized with directory: {self.config_dir}")

    def _load_configs(self) -> None:
        """Load all configuration files from config directory."""
        if not self.config_dir.exists():
            logger.warning(f"Configuration directory not found: {self.config_dir}")
            self.config_dir.mkdir(parents=True, exist_ok=True)
            return

        for file in sorted(self.config_dir.glob("*.yml")):
            try:
                config_name = file.stem
                self._configs[config_name] = self.load_config_file(str(file)) or {}
                logger.info(f"Loaded configuration: {config_name}")
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Failed to load config {file}: {e}")

    def load_config_file(self, config_path: str) -> Dict[str, Any]:
        """
        Load a single configuration file.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            Dictionary containing configuration data
        """
        with open(config_path, "r") as file:
            data = yaml.safe_load(file)
        return data

    def get_config(self, name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Get configuration by name or return current config.

        Args:
            name: Configuration name. If None, returns current config.

        Returns:
            Configuration dictionary or None if not found
        """
        if name is None:
            name = self._current_config_name
        if name is None:
            return None
        return deepcopy(self._configs.get(name))

    def set_current_config(self, name: str) -> bool:
        """
        Set the current active configuration.

        Returns:
            True if successful, False if config not found
        """
        if name in self._configs:
            self._current_config_name = name
            logger.info(f"Current config set to: {name}")
            return True
        logger.error(f"Configuration not found: {name}")
        return False

    def save_config(self, name: str, config: Dict[str, Any]) -> None:
        """
        Save configuration to file.

        Args:
            name: Name for the configuration
            config: Configuration dictionary to save
        """
        config_path = self.config_dir / f"{name}.yml"
        with open(config_path, "w") as f:
            yaml.dump(config, f, default_flow_style=False, sort_keys=False)
        self._configs[name] = deepcopy(config)
        logger.info(f"Saved configuration: {name}")

    def list_configs(self) -> List[str]:
        """List all available configurations."""
        return list(self._configs.keys())

    def get_settings(self, name: Optional[str] = None) -> Dict[str, Any]:
        """
        Complete settings: DEFAULT_SETTINGS overlaid with the named (or current) config.

        An unknown name yields the defaults alone.
        """
        config = self.get_config(name) or {}
        return self._merge_settings(DEFAULT_SETTINGS, config)

    def get_stage_limits(self, config_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Get stage movement limits."""
        config = self.get_config(config_name)
        if not config:
            return None

        stage = config.get("stage", {})
        return stage.get("limits")

    @staticmethod
    def _merge_settings(defaults: Dict[str, Any], specific: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge default settings with specific settings.
        Specific settings override defaults.
        """
        result = deepcopy(defaults)
        for key, value in specific.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = ConfigManager._merge_settings(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate configuration structure and return list of errors.

        Args:
            config: Configuration dictionary to validate

        Returns:
            List of error messages (empty if valid)
        """
        errors = []

        for key in _REQUIRED_SECTIONS:
            if key not in config:
                errors.append(f"Missing required key: {key}")
            elif not isinstance(config[key], dict):
                errors.append(f"'{key}' must be a dictionary")

        stage = config.get("stage")
        if isinstance(stage, dict):
            limits = stage.get("limits", {})
            if not isinstance(limits, dict):
                errors.append("'stage.limits' must be a dictionary")
            else:
                for axis_key, axis_limits in limits.items():
                    if not isinstance(axis_limits, dict):
                        errors.append(f"'stage.limits.{axis_key}' must be a dictionary")
                        continue
                    low, high = axis_limits.get("low"), axis_limits.get("high")
                    if low is not None and high is not None and low > high:
                        errors.append(f"'stage.limits.{axis_key}': low ({low}) is greater than high ({high})")
            step_sizes = stage.get("step_sizes_um")
            if step_sizes is not None and (not isinstance(step_sizes, list) or not step_sizes):
                errors.append("'stage.step_sizes_um' must be a non-empty list")

        metrics = config.get("metrics")
        if isinstance(metrics, dict):
            registered = metrics.get("registered")
            if registered is not None and not isinstance(registered, list):
                errors.append("'metrics.registered' must be a list")
            default = metrics.get("default")
            if isinstance(registered, list) and default is not None and default not in registered:
                errors.append(f"'metrics.default' ({default}) is not in 'metrics.registered'")

        timers = config.get("timers")
        if isinstance(timers, dict):
            for key, value in timers.items():
                if not isinstance(value, (int, float)) or value <= 0:
                    errors.append(f"'timers.{key}' must be a positive number")

        return errors

    def create_empty_config(self, stage_name: str) -> Dict[str, Any]:
        """
        Create a configuration template with the default values.

        Args:
            stage_name: Name of the stage setup

        Returns:
            Configuration dictionary
        """
        config = {"name": stage_name}
        config.update(get_default_settings())
        return config


# Example usage and testing
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    cm = ConfigManager()
    print("Available configurations:", cm.list_configs())

    if "config_default" in cm.list_configs():
        cm.set_current_config("config_default")
        settings = cm.get_settings()
        print(f"\nStage limits: {settings['stage']['limits']}")
        print(f"Step sizes: {settings['stage']['step_sizes_um']}")
        print(f"Validation errors: {cm.validate_config(settings)}")
