"""Configuration system.

YAML configuration files validated by Pydantic models, with a small set of
environment variable overrides for deployment secrets and limits.
Entry point: load_config().
"""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlencode, urlparse, urlunparse

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from sitesampler.exceptions import ConfigError

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
BOT_USER_AGENT = "Mozilla/5.0 (compatible; AI Report Bot/1.0)"

# Environment variable -> (section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "BROWSERLESS_URL": ("browser", "endpoint"),
    "BROWSERLESS_TOKEN": ("browser", "token"),
    "AI_PAGE_WEBHOOK_URL": ("webhooks", "page_url"),
    "AI_COMPLETION_WEBHOOK_URL": ("webhooks", "completion_url"),
    "CRAWL_FIRST_LEVEL_LIMIT": ("sampling", "first_level_limit"),
    "SITESAMPLER_STORE": ("store", "path"),
}


class BrowserConfig(BaseModel):
    """Remote headless browser connection and retry settings."""

    endpoint: str = Field(
        default="ws://localhost:3000",
        description="Remote browser endpoint (http(s) URLs are converted to ws(s))",
    )
    token: str | None = Field(
        default=None,
        description="Access token appended to the endpoint as ?token=",
    )
    user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        description="User-Agent used by rendered pages",
    )
    viewport_width: int = Field(default=1280, ge=320, le=7680)
    viewport_height: int = Field(default=720, ge=240, le=4320)
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after the first attempt (total attempts = max_retries + 1)",
    )
    retry_delay: float = Field(
        default=2.0,
        ge=0.0,
        description="Base backoff in seconds; doubled after every failed attempt",
    )
    navigation_timeout: float = Field(
        default=120.0,
        gt=0.0,
        description="Navigation timeout in seconds for the first attempt",
    )
    timeout_step: float = Field(
        default=10.0,
        ge=0.0,
        description="Seconds added to the navigation timeout per attempt",
    )
    stability_timeout: float = Field(
        default=5.0,
        gt=0.0,
        description="Max seconds to wait for document.readyState after navigation",
    )
    settle_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Fixed settle pause in seconds after the page is ready",
    )
    settle_step: float = Field(
        default=0.5,
        ge=0.0,
        description="Seconds added to the settle pause per attempt",
    )

    @property
    def ws_endpoint(self) -> str:
        """Endpoint as a WebSocket URL with the token attached.

        Examples:
            >>> BrowserConfig(endpoint="https://chrome.example.com", token="t").ws_endpoint
            'wss://chrome.example.com?token=t'
        """
        parsed = urlparse(self.endpoint)
        scheme = {"https": "wss", "http": "ws"}.get(parsed.scheme, parsed.scheme)
        query = parsed.query
        if self.token:
            token_query = urlencode({"token": self.token})
            query = f"{query}&{token_query}" if query else token_query
        return urlunparse((scheme, parsed.netloc, parsed.path, parsed.params, query, ""))


class HTTPConfig(BaseModel):
    """Plain HTTP checks (status, robots.txt, sitemap downloads)."""

    timeout: float = Field(default=10.0, gt=0.0, description="Request timeout in seconds")
    max_redirects: int = Field(default=5, ge=0, le=20)
    user_agent: str = Field(
        default=BOT_USER_AGENT,
        description="User-Agent for robots.txt, sitemap and status requests",
    )


class SamplingConfig(BaseModel):
    """Limits applied when reducing a sitemap to a crawl sample."""

    first_level_limit: int = Field(
        default=10,
        ge=1,
        description="Maximum depth-1 pages to crawl (env: CRAWL_FIRST_LEVEL_LIMIT)",
    )
    max_per_category: int = Field(
        default=2,
        ge=0,
        description="Maximum deeper pages taken from each category",
    )
    fallback_limit: int = Field(
        default=20,
        ge=1,
        description="Maximum homepage links used when no sitemap is available",
    )
    max_child_sitemaps: int = Field(
        default=10,
        ge=1,
        description="Maximum child sitemaps fetched from a sitemap index",
    )


class CrawlConfig(BaseModel):
    """Batch crawl and scan loop settings."""

    batch_size: int = Field(default=3, ge=1, le=50, description="Pages rendered in parallel")
    batch_delay: float = Field(
        default=2.0,
        ge=0.0,
        description="Pause in seconds between batches",
    )
    scan_interval: float = Field(
        default=30.0,
        gt=0.0,
        description="Seconds between scans for verified jobs",
    )


class WebhookConfig(BaseModel):
    """AI-analysis webhook endpoints and delivery policy."""

    page_url: str | None = Field(
        default=None,
        description="Per-page analysis webhook (env: AI_PAGE_WEBHOOK_URL)",
    )
    completion_url: str | None = Field(
        default=None,
        description="Per-job completion webhook (env: AI_COMPLETION_WEBHOOK_URL)",
    )
    timeout: float = Field(default=120.0, gt=0.0)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay: float = Field(default=2.0, ge=0.0, description="Fixed delay between retries")

    @field_validator("page_url", "completion_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Treat blank strings as unset and require http(s) otherwise."""
        if v is None or not v.strip():
            return None
        v = v.strip()
        if urlparse(v).scheme not in ("http", "https"):
            raise ValueError(f"Webhook URL must use http or https: {v}")
        return v


class StoreConfig(BaseModel):
    """Job/page store location."""

    path: str = Field(default="sitesampler.db", description="Store file (.json or .db)")
    backend: Literal["json", "sqlite"] | None = Field(
        default=None,
        description="Explicit backend; None picks one from the file extension",
    )


class SiteSamplerConfig(BaseModel):
    """Root configuration object."""

    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    http: HTTPConfig = Field(default_factory=HTTPConfig)
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)

    @model_validator(mode="after")
    def validate_limits(self) -> "SiteSamplerConfig":
        """Fallback sampling must be able to hold every first-level link."""
        if self.sampling.fallback_limit < self.sampling.first_level_limit:
            raise ValueError(
                f"sampling.fallback_limit ({self.sampling.fallback_limit}) must be >= "
                f"sampling.first_level_limit ({self.sampling.first_level_limit})"
            )
        return self


def apply_env_overrides(
    config_dict: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay environment variables onto a raw config dict.

    Empty variables are ignored. Values are validated later by the models.

    Args:
        config_dict: Raw configuration mapping (not modified)
        environ: Environment to read, defaults to os.environ

    Returns:
        New configuration mapping with overrides applied
    """
    environ = os.environ if environ is None else environ
    merged = {
        key: dict(value) if isinstance(value, dict) else value
        for key, value in config_dict.items()
    }

    for var, (section, field) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or not value.strip():
            continue
        target = merged.setdefault(section, {})
        if not isinstance(target, dict):
            raise ValueError(f"Configuration section '{section}' must be a mapping")
        target[field] = value.strip()

    return merged


def load_config(
    path: Path | None = None, environ: Mapping[str, str] | None = None
) -> SiteSamplerConfig:
    """Load and validate configuration.

    Args:
        path: Optional YAML configuration file; defaults are used when omitted
        environ: Environment for overrides, defaults to os.environ

    Returns:
        Validated SiteSamplerConfig instance

    Raises:
        ConfigError: If the file is missing, contains invalid YAML, or validation fails
    """
    source = str(path) if path is not None else "environment"
    try:
        config_dict: dict[str, Any] = {}
        if path is not None:
            if not path.exists():
                raise FileNotFoundError(f"Configuration file not found: {path}")

            if not path.is_file():
                raise ValueError(f"Configuration path is not a file: {path}")

            with path.open("r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)

            if loaded is not None:
                if not isinstance(loaded, dict):
                    raise ValueError(
                        f"Configuration file must contain a YAML object/dict, "
                        f"got {type(loaded).__name__}"
                    )
                config_dict = loaded

        return SiteSamplerConfig(**apply_env_overrides(config_dict, environ))
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed for {source}:\n{e}") from e
    except ValueError as e:
        raise ConfigError(str(e)) from e
