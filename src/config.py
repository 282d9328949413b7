from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = Field("sqlite:///hma_monitor.db", env="DATABASE_URL")
    LOG_LEVEL: str = Field("INFO", env="LOG_LEVEL")

    # Upstox API Configuration
    UPSTOX_API_KEY: str = Field("", env="UPSTOX_API_KEY")
    UPSTOX_ACCESS_TOKEN: str = Field("", env="UPSTOX_ACCESS_TOKEN")

    # HMA configuration
    HMA_PERIOD: int = Field(55, env="HMA_PERIOD")
    HMA_REQUIRED_CANDLES: int = Field(60, env="HMA_REQUIRED_CANDLES")  # period + 5 bars of margin
    HMA_CANDLE_TIMEFRAME: str = Field("5m", env="HMA_CANDLE_TIMEFRAME")
    HMA_MAX_LOOKBACK_DAYS: int = Field(5, env="HMA_MAX_LOOKBACK_DAYS")
    HMA_REFRESH_MINUTES: int = Field(5, env="HMA_REFRESH_MINUTES")
    HMA_REFRESH_TOLERANCE_SEC: int = Field(5, env="HMA_REFRESH_TOLERANCE_SEC")
    HMA_STALE_MINUTES: int = Field(10, env="HMA_STALE_MINUTES")

    # Exchange session (IST, HH:MM)
    SESSION_OPEN: str = Field("09:15", env="SESSION_OPEN")
    SESSION_CLOSE: str = Field("15:30", env="SESSION_CLOSE")

    # Scheduler / rate limiting (broker ceiling is 10/s, 200/min)
    MONITOR_TICK_SEC: float = Field(2.0, env="MONITOR_TICK_SEC")
    MONITOR_BATCH_SIZE: int = Field(2, env="MONITOR_BATCH_SIZE")
    RATE_LIMIT_MIN_INTERVAL_MS: int = Field(150, env="RATE_LIMIT_MIN_INTERVAL_MS")
    RATE_LIMIT_PER_MINUTE: int = Field(200, env="RATE_LIMIT_PER_MINUTE")
    ENTRY_HANDOFF_DELAY_SEC: float = Field(3.0, env="ENTRY_HANDOFF_DELAY_SEC")

    # Orders
    TRADING_MODE: str = Field("PAPER", env="TRADING_MODE")  # PAPER or LIVE
    DEFAULT_INDEX: str = Field("NIFTY", env="DEFAULT_INDEX")
    PRODUCT_TYPE: str = Field("INTRADAY", env="PRODUCT_TYPE")
    ORDER_TAG_PREFIX: str = Field("hma-monitor", env="ORDER_TAG_PREFIX")

    # Monitor defaults for new instruments
    DEFAULT_TARGET_POINTS: float = Field(20.0, env="DEFAULT_TARGET_POINTS")
    DEFAULT_STOP_LOSS_POINTS: float = Field(10.0, env="DEFAULT_STOP_LOSS_POINTS")
    DEFAULT_TRAILING_OFFSET: float = Field(10.0, env="DEFAULT_TRAILING_OFFSET")
    DEFAULT_EXIT_AFTER_MINUTES: int = Field(60, env="DEFAULT_EXIT_AFTER_MINUTES")

    # State persistence
    STATE_BACKEND: str = Field("db", env="STATE_BACKEND")  # db or file
    STATE_FILE: str = Field("data/monitor_state.json", env="STATE_FILE")
    AUTO_RESUME_MONITORING: bool = Field(True, env="AUTO_RESUME_MONITORING")

    # Notifications
    NOTIFIER_WEBHOOK: str = Field("", env="NOTIFIER_WEBHOOK")

    # Application
    APP_PORT: int = Field(8000, env="APP_PORT")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8"
    }

settings = Settings()
