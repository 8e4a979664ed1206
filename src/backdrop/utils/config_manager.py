"""
Configuration Manager for backdrop

This module loads YAML configuration and exposes typed pipeline settings.
"""

import os
import tempfile
import logging
from dataclasses import dataclass, fields

import yaml

logger = logging.getLogger(__name__)

DEFAULT_COMPONENT = "backdrop"


class ConfigManager:
    """Manages application configuration."""

    def __init__(self, config_dir=None):
        """Initialize the configuration manager.

        Args:
            config_dir (str, optional): Directory containing config files.
                                       If None, uses the configs directory at the project root.
        """
        if config_dir is None:
            # src/backdrop/utils -> project root
            root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))
            self.config_dir = os.path.join(root, "configs")
        else:
            self.config_dir = config_dir

        self.configs = {}

    def load_config(self, component_name):
        """Load configuration for a specific component.

        Args:
            component_name (str): Name of the component (e.g., 'backdrop')

        Returns:
            dict: Configuration dictionary or empty dict if not found
        """
        config_path = os.path.join(self.config_dir, f"{component_name}.yaml")

        if not os.path.exists(config_path):
            logger.warning(f"Configuration file not found: {config_path}")
            self.configs[component_name] = {}
            return {}

        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading configuration for {component_name}: {e}")
            config = {}
        self.configs[component_name] = config
        logger.info(f"Loaded configuration for {component_name}")
        return config

    def get_config(self, component_name, section=None, key=None, default=None):
        """Get configuration value.

        Args:
            component_name (str): Name of the component
            section (str, optional): Section name within the config
            key (str, optional): Key within the section
            default: Default value if not found

        Returns:
            The configuration value or default if not found
        """
        if component_name not in self.configs:
            self.load_config(component_name)

        config = self.configs.get(component_name, {})

        if section is None:
            return config

        section_data = config.get(section) or {}

        if key is None:
            return section_data

        return section_data.get(key, default)

    def save_config(self, component_name, config_data):
        """Save configuration for a component.

        Args:
            component_name (str): Name of the component
            config_data (dict): Configuration data to save

        Returns:
            bool: True if successful, False otherwise
        """
        config_path = os.path.join(self.config_dir, f"{component_name}.yaml")

        try:
            os.makedirs(os.path.dirname(config_path), exist_ok=True)

            with open(config_path, 'w') as f:
                yaml.dump(config_data, f, default_flow_style=False)

            self.configs[component_name] = config_data
            logger.info(f"Saved configuration for {component_name}")
            return True
        except OSError as e:
            logger.error(f"Error saving configuration for {component_name}: {e}")
            return False


# (section, key) for every BackdropConfig field
_FIELD_SOURCES = {
    "video_model_path": ("segmentation", "video_model_path"),
    "image_model_path": ("segmentation", "image_model_path"),
    "video_quality": ("segmentation", "video_quality"),
    "image_quality": ("segmentation", "image_quality"),
    "video_blur_radius": ("blur", "video_radius"),
    "image_blur_radius": ("blur", "image_radius"),
    "video_codec": ("output", "video_codec"),
    "pix_fmt": ("output", "pix_fmt"),
    "crf": ("output", "crf"),
    "container_suffix": ("output", "container_suffix"),
    "intermediate_codec": ("output", "intermediate_codec"),
    "intermediate_suffix": ("output", "intermediate_suffix"),
    "default_fps": ("output", "default_fps"),
    "buffer_pool_size": ("pipeline", "buffer_pool_size"),
    "buffer_timeout": ("pipeline", "buffer_timeout"),
    "cache_max_entries": ("pipeline", "cache_max_entries"),
    "work_dir": ("pipeline", "work_dir"),
    "workers": ("pipeline", "workers"),
}


@dataclass
class BackdropConfig:
    """Typed settings for the background replacement pipeline."""
    video_model_path: str = "models/selfie_segmenter_landscape.tflite"
    image_model_path: str = "models/selfie_segmenter.tflite"
    video_quality: str = "balanced"
    image_quality: str = "accurate"
    video_blur_radius: float = 12.0
    image_blur_radius: float = 15.0
    video_codec: str = "h264"
    pix_fmt: str = "yuv420p"
    crf: int = 23
    container_suffix: str = ".mov"
    intermediate_codec: str = "ffv1"
    intermediate_suffix: str = ".mkv"
    default_fps: int = 30
    buffer_pool_size: int = 4
    buffer_timeout: float = 5.0
    cache_max_entries: int = 16
    work_dir: str = ""
    workers: int = 2

    def __post_init__(self):
        if not self.work_dir:
            self.work_dir = os.path.join(tempfile.gettempdir(), "backdrop")
        if self.buffer_pool_size < 2:
            raise ValueError("buffer_pool_size must be at least 2")

    @classmethod
    def from_manager(cls, manager=None, component_name=DEFAULT_COMPONENT):
        """Build settings from a ConfigManager, keeping defaults for missing keys."""
        manager = manager or ConfigManager()
        values = {}
        for f in fields(cls):
            section, key = _FIELD_SOURCES[f.name]
            value = manager.get_config(component_name, section, key)
            if value is not None:
                values[f.name] = value
        return cls(**values)
