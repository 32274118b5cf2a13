import logging

from pydantic_settings import BaseSettings

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # App
    APP_NAME: str = "MarketPulse Scraper"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: str = "production"  # "development" enables the loopback proxy stub
    DEBUG: bool = False

    # AWS endpoint overrides point at LocalStack / ElasticMQ in development
    AWS_REGION: str = "eu-west-1"
    AWS_ENDPOINT_URL: str = ""

    # Durable queue (SQS)
    SQS_QUEUE_URL: str = ""
    SQS_ENDPOINT_URL: str = ""
    SQS_BATCH_LIMIT: int = 10  # SendMessageBatch ceiling
    SQS_WAIT_SECONDS: int = 20  # long-poll
    SQS_VISIBILITY_TIMEOUT: int = 900  # must outlive one worker invocation

    # Blob storage (S3)
    SCRAPED_DATA_BUCKET: str = "marketpulse-ai-scraper-dev-data"

    # Proxy provider
    PROXY_API_KEY: str = ""
    PROXY_SERVICE_URL: str = ""
    PROXY_USERNAME: str = ""
    PROXY_PASSWORD: str = ""
    PROXY_URLS: str = ""  # comma-separated static proxies, skips the provider
    PROXY_CACHE_TTL: int = 1800  # 30 minutes
    PROXY_POOL_BACKEND: str = "memory"  # "memory" (per worker) or "redis" (shared)
    PROXY_CHECK_URL: str = "https://api.ipify.org?format=json"

    # Redis (shared proxy pool)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Retry defaults (milliseconds)
    RETRY_MAX_RETRIES: int = 5
    RETRY_INITIAL_DELAY: int = 1000
    RETRY_MAX_DELAY: int = 30000
    RETRY_FACTOR: float = 2.0
    RETRY_JITTER: bool = True

    # Browser
    BROWSER_HEADLESS: bool = True
    BROWSER_NAVIGATION_TIMEOUT: int = 60000  # ms
    BROWSER_ACTION_TIMEOUT: int = 30000  # ms
    BROWSER_BLOCK_RESOURCES: bool = True

    # Challenge solver (optional)
    CHALLENGE_SOLVER_PROVIDER: str = ""  # e.g. "2captcha"
    CHALLENGE_SOLVER_TOKEN: str = ""

    # Sentry
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.2
    SENTRY_ENVIRONMENT: str = "development"

    # Logging
    LOG_FORMAT: str = "json"  # "json" for production, "text" for development
    LOG_LEVEL: str = "INFO"

    # Metrics
    METRICS_ENABLED: bool = True

    def model_post_init(self, __context) -> None:
        if not self.SQS_QUEUE_URL and self.is_development:
            local = "http://localhost:9324/queue/marketpulse-ai-scraper-dev-jobs"
            _logger.warning(
                "SQS_QUEUE_URL not set, using local queue %s", local
            )
            object.__setattr__(self, "SQS_QUEUE_URL", local)
            if not self.SQS_ENDPOINT_URL:
                object.__setattr__(self, "SQS_ENDPOINT_URL", "http://localhost:9324")

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
