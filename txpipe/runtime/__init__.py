from .logging import JsonFormatter, setup_logger, setup_logger_from_settings
from .settings import PipelineSettings, load_settings

__all__ = [
    "JsonFormatter",
    "PipelineSettings",
    "load_settings",
    "setup_logger",
    "setup_logger_from_settings",
]
