from sourcevault.config.loader import YamlConfigLoader
from sourcevault.config.models import AppConfig, CacheSettings, ConfigLoadRequest, LoggingSettings

__all__ = ["AppConfig", "CacheSettings", "ConfigLoadRequest", "LoggingSettings", "YamlConfigLoader"]
