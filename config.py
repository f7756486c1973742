"""Configuration module for MedLove Reminder Service.

This module provides configuration settings using Pydantic Settings.
Environment variables can be used to override default values.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings for MedLove Reminder Service.

    All settings can be overridden via environment variables.
    Example: export DATABASE_URL="postgresql://..."
    """

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./medlove.db"
    """Database connection URL. Default: SQLite file in current directory"""

    # API Server Configuration
    API_HOST: str = "0.0.0.0"
    """API server host address"""

    API_PORT: int = 8005
    """API server port"""

    # MCP Server Configuration
    MCP_HOST: str = "127.0.0.1"
    """MCP server host address"""

    MCP_PORT: int = 8006
    """MCP server port for SSE transport (separate from REST API)"""

    MCP_TRANSPORT: str = "sse"
    """MCP transport type: 'stdio' for local, 'sse' for network access"""

    # Scheduling Configuration
    TIMEZONE: str = "UTC"
    """Timezone used for HH:MM matching, calendar dates and the midnight reset"""

    WORKER_ENABLED: bool = True
    """Enable/disable the background reminder worker"""

    WORKER_CHECK_INTERVAL: int = 300
    """Interval in seconds between reminder sweeps (default: 5 minutes)"""

    FOLLOW_UP_DELAY_MINUTES: int = 15
    """Minutes between a reminder and its next follow-up"""

    MAX_FOLLOW_UPS: int = 3
    """Follow-ups sent after the primary reminder (4 emails total by default)"""

    # Email Configuration
    EMAIL_TRANSPORT: str = "log"
    """Email transport: 'smtp', 'http' (JSON relay) or 'log' (development)"""

    SMTP_HOST: str = "smtp.gmail.com"
    SMTP_PORT: int = 587

    EMAIL_USER: str = ""
    """Sender address / SMTP login"""

    EMAIL_PASS: str = ""
    """SMTP password (Gmail app password)"""

    EMAIL_API_URL: str = ""
    """Endpoint for the 'http' transport"""

    EMAIL_API_KEY: str = ""
    """Bearer token for the 'http' transport"""

    EMAIL_SENDER_NAME: str = "MedLove Reminders"

    APP_URL: str = "https://med-love-reminder.vercel.app"
    """Front end URL used for the 'Mark as Taken' link"""

    # Logging Configuration
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    class Config:
        """Pydantic config"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
