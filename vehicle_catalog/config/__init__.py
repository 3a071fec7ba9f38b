from vehicle_catalog.config.settings import (
    ApplicationSettings,
    ClaudeSettings,
    DocumentAISettings,
    MonitoringSettings,
    PipelineSettings,
    get_environment_info,
    get_settings,
)

__all__ = [
    "ApplicationSettings",
    "ClaudeSettings",
    "DocumentAISettings",
    "MonitoringSettings",
    "PipelineSettings",
    "get_environment_info",
    "get_settings",
]
