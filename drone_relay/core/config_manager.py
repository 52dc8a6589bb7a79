import asyncio
from pathlib import Path
from typing import Dict, Iterable, List

import aiofiles

from .logging_utils import get_module_logger


logger = get_module_logger("ConfigManager")


class ConfigManager:
    """Reads flat ``key = value`` config files.

    Blank lines and ``#`` comments are ignored, trailing comments are
    stripped and values may be wrapped in single or double quotes.
    """

    @staticmethod
    def parse_lines(lines: Iterable[str]) -> Dict[str, str]:
        config: Dict[str, str] = {}

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue

            key, value = line.split('=', 1)
            key = key.strip()
            value = value.split('#', 1)[0].strip()

            if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                value = value[1:-1]

            config[key] = value

        return config

    def read_config(self, config_path: Path) -> Dict[str, str]:
        if not config_path.exists():
            logger.debug("No config file at %s, using defaults", config_path)
            return {}

        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                return self.parse_lines(f)
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)
            return {}

    async def read_config_async(self, config_path: Path) -> Dict[str, str]:
        if not await asyncio.to_thread(config_path.exists):
            logger.debug("No config file at %s, using defaults", config_path)
            return {}

        try:
            async with aiofiles.open(config_path, 'r', encoding='utf-8') as f:
                lines = await f.readlines()
        except OSError as e:
            logger.error("Failed to read config %s: %s", config_path, e)
            return {}

        return self.parse_lines(lines)

    def get_port(self, config: Dict[str, str], key: str, default: int, *, allow_ephemeral: bool = False) -> int:
        """Integer in 1-65535, or 0 when ``allow_ephemeral`` lets the OS pick."""
        value = self.get_int(config, key, default)
        low = 0 if allow_ephemeral else 1
        if not low <= value <= 65535:
            logger.warning("Port %s=%d out of range, using default %d", key, value, default)
            return default
        return value

    def get_int(self, config: Dict[str, str], key: str, default: int = 0) -> int:
        if key not in config:
            return default
        try:
            return int(config[key])
        except ValueError:
            logger.warning("Invalid int value for %s: %s, using default %d", key, config[key], default)
            return default

    def get_float(self, config: Dict[str, str], key: str, default: float = 0.0) -> float:
        if key not in config:
            return default
        try:
            return float(config[key])
        except ValueError:
            logger.warning("Invalid float value for %s: %s, using default %f", key, config[key], default)
            return default

    def get_str(self, config: Dict[str, str], key: str, default: str = "") -> str:
        return config.get(key, default)

    def get_list(self, config: Dict[str, str], key: str, default: Iterable[str] = ()) -> List[str]:
        if key not in config:
            return list(default)
        return [item.strip() for item in config[key].split(',') if item.strip()]


_config_manager = ConfigManager()


def get_config_manager() -> ConfigManager:
    return _config_manager
