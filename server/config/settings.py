"""
Tablefill Server Settings Configuration
Environment-driven configuration for the row enrichment worker and API
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator
from pathlib import Path


class TablefillSettings(BaseSettings):
    """Configuration settings for the Tablefill server"""

    # Server Configuration
    host: str = "localhost"
    port: int = 8010
    debug: bool = False
    environment: str = "development"

    # Redis Configuration (events, cancellation flags, job queue)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None

    # Ollama Integration (query planning + extraction)
    ollama_host: str = "localhost"
    ollama_port: int = 11434
    ollama_model: str = "qwen2.5:14b"
    planner_temperature: float = 0.3
    extractor_temperature: float = 0.0
    llm_timeout: float = 120.0

    # Web Search
    search_provider: str = "serper"  # serper or searxng
    serper_url: str = "https://google.serper.dev/search"
    serper_api_key: Optional[str] = None
    searxng_url: str = "http://localhost:8888"
    search_results_per_query: int = 10
    search_timeout: float = 30.0

    # Crawling
    scrapingbee_url: str = "https://app.scrapingbee.com/api/v1"
    scrapingbee_api_key: Optional[str] = None
    fetch_timeout: float = 30.0
    crawl_concurrency: int = 3

    # Enrichment loop
    max_cycles: int = 2
    max_urls_per_cycle: int = 15
    extraction_batch_size: int = 4

    # Run control
    cancellation_ttl_seconds: int = 3600
    job_queue_name: str = "csv-enrichment"
    job_max_attempts: int = 3
    job_backoff_seconds: float = 2.0

    # CORS Configuration
    enable_cors: bool = True
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Logging
    log_level: str = "INFO"
    log_path: str = "./logs"

    @property
    def redis_url(self) -> str:
        """Construct Redis URL"""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def ollama_base_url(self) -> str:
        """Construct Ollama base URL"""
        return f"http://{self.ollama_host}:{self.ollama_port}"

    @field_validator("search_provider")
    @classmethod
    def validate_search_provider(cls, v):
        """Only the providers implemented in enrichment.searcher are allowed"""
        v = v.lower()
        if v not in ("serper", "searxng"):
            raise ValueError("search_provider must be 'serper' or 'searxng'")
        return v

    @field_validator("crawl_concurrency", "max_cycles", "max_urls_per_cycle", "extraction_batch_size")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("log_path")
    @classmethod
    def ensure_log_path_exists(cls, v):
        """Ensure log path exists"""
        path = Path(v)
        path.mkdir(parents=True, exist_ok=True)
        return str(path.absolute())

    model_config = {
        "env_file": ".env",
        "env_prefix": "TABLEFILL_",
        "case_sensitive": False
    }


# Global settings instance
settings = TablefillSettings()


def get_settings() -> TablefillSettings:
    """Get settings instance (for dependency injection)"""
    return settings


def validate_production_config():
    """Validate configuration is ready for production deployment"""
    issues = []

    if settings.debug:
        issues.append("Debug mode should be disabled in production")

    if settings.search_provider == "serper" and not settings.serper_api_key:
        issues.append("Serper API key is required when search_provider is 'serper'")

    if not settings.scrapingbee_api_key:
        issues.append("ScrapingBee API key is missing; fallback fetching will fail")

    if issues:
        raise ValueError(f"Production configuration issues: {'; '.join(issues)}")

    return True


if __name__ == "__main__":
    print("Tablefill Configuration:")
    print(f"Redis URL: {settings.redis_url}")
    print(f"Ollama URL: {settings.ollama_base_url} (model: {settings.ollama_model})")
    print(f"Search provider: {settings.search_provider}")
    print(f"Crawl concurrency: {settings.crawl_concurrency}")
    print(f"Max cycles: {settings.max_cycles}")
