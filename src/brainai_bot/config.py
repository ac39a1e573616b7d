"""
Central configuration module for BrainAI Bot
Reads and validates environment variables with strict checks outside dev
"""
import os
import sys
from typing import Optional, List

from dotenv import load_dotenv

from .exceptions import ConfigurationError

# Only load .env in development
if os.getenv("ENV", "dev").lower() == "dev":
    load_dotenv()


class Config:
    """Central configuration class with environment variable validation"""
    
    # Environment
    ENV: str = os.getenv("ENV", "dev").lower()
    
    # Required for all environments
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    PORT: int = int(os.getenv("PORT", "8000"))
    
    # Inbound webhook
    BOT_TOKEN: Optional[str] = os.getenv("BOT_TOKEN")
    WEBHOOK_SECRET: Optional[str] = os.getenv("WEBHOOK_SECRET")
    PROCESSED_UPDATES_CAPACITY: int = int(os.getenv("PROCESSED_UPDATES_CAPACITY", "1000"))
    
    # Generation providers
    FAL_KEY: Optional[str] = os.getenv("FAL_KEY")
    GOAPI_API_KEY: Optional[str] = os.getenv("GOAPI_API_KEY")
    IMAGE_PROVIDER: str = os.getenv("IMAGE_PROVIDER", "goapi").lower()
    VIDEO_PROVIDER: str = os.getenv("VIDEO_PROVIDER", "fal-video").lower()
    PROVIDER_HTTP_TIMEOUT: float = float(os.getenv("PROVIDER_HTTP_TIMEOUT", "30"))
    
    # Plain-text chat (disabled when OPENAI_API_KEY is unset)
    OPENAI_API_KEY: Optional[str] = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    TEXT_MODEL: str = os.getenv("TEXT_MODEL", "gpt-5-mini")
    TEXT_HISTORY_MESSAGES: int = int(os.getenv("TEXT_HISTORY_MESSAGES", "10"))
    TEXT_MAX_TOKENS: int = int(os.getenv("TEXT_MAX_TOKENS", "900"))
    
    # Quota limits per billing period
    FREE_TEXT_REQUESTS: int = int(os.getenv("FREE_TEXT_REQUESTS", "100"))
    FREE_IMAGE_REQUESTS: int = int(os.getenv("FREE_IMAGE_REQUESTS", "10"))
    FREE_VIDEO_REQUESTS: int = int(os.getenv("FREE_VIDEO_REQUESTS", "5"))
    PREMIUM_TEXT_REQUESTS: int = int(os.getenv("PREMIUM_TEXT_REQUESTS", "1000"))
    PREMIUM_IMAGE_REQUESTS: int = int(os.getenv("PREMIUM_IMAGE_REQUESTS", "100"))
    PREMIUM_VIDEO_REQUESTS: int = int(os.getenv("PREMIUM_VIDEO_REQUESTS", "50"))
    PREMIUM_DURATION_DAYS: int = int(os.getenv("PREMIUM_DURATION_DAYS", "30"))
    
    # In-process scheduler (premium expiry runs daily at this UTC hour)
    SCHEDULER_ENABLED: bool = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"
    PREMIUM_EXPIRY_HOUR: int = int(os.getenv("PREMIUM_EXPIRY_HOUR", "2"))
    
    # Task polling (interval in seconds, duration cap = interval * max attempts)
    IMAGE_POLL_INTERVAL: float = float(os.getenv("IMAGE_POLL_INTERVAL", "10"))
    IMAGE_POLL_MAX_ATTEMPTS: int = int(os.getenv("IMAGE_POLL_MAX_ATTEMPTS", "60"))
    VIDEO_POLL_INTERVAL: float = float(os.getenv("VIDEO_POLL_INTERVAL", "5"))
    VIDEO_POLL_MAX_ATTEMPTS: int = int(os.getenv("VIDEO_POLL_MAX_ATTEMPTS", "180"))
    POLL_MAX_TRANSIENT_ERRORS: int = int(os.getenv("POLL_MAX_TRANSIENT_ERRORS", "5"))
    
    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    
    def __init__(self):
        """Initialize configuration and validate required variables"""
        self._validate()
    
    def validate(self) -> List[str]:
        """
        Collect configuration problems
        
        Returns:
            List of human-readable error strings (empty when valid)
        """
        errors = []
        
        if self.ENV not in ["dev", "test", "staging", "prod"]:
            errors.append(f"Invalid ENV value: {self.ENV}. Must be 'dev', 'test', 'staging', or 'prod'")
        
        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required but not set")
        
        limits = {
            "FREE_TEXT_REQUESTS": self.FREE_TEXT_REQUESTS,
            "FREE_IMAGE_REQUESTS": self.FREE_IMAGE_REQUESTS,
            "FREE_VIDEO_REQUESTS": self.FREE_VIDEO_REQUESTS,
            "PREMIUM_TEXT_REQUESTS": self.PREMIUM_TEXT_REQUESTS,
            "PREMIUM_IMAGE_REQUESTS": self.PREMIUM_IMAGE_REQUESTS,
            "PREMIUM_VIDEO_REQUESTS": self.PREMIUM_VIDEO_REQUESTS,
        }
        for name, value in limits.items():
            if value <= 0:
                errors.append(f"{name} must be a positive integer (got: {value})")
        
        if self.IMAGE_POLL_INTERVAL <= 0 or self.VIDEO_POLL_INTERVAL <= 0:
            errors.append("Poll intervals must be positive")
        if self.IMAGE_POLL_MAX_ATTEMPTS <= 0 or self.VIDEO_POLL_MAX_ATTEMPTS <= 0:
            errors.append("Poll max attempts must be positive")
        if self.POLL_MAX_TRANSIENT_ERRORS <= 0:
            errors.append("POLL_MAX_TRANSIENT_ERRORS must be positive")
        if self.PROCESSED_UPDATES_CAPACITY <= 0:
            errors.append("PROCESSED_UPDATES_CAPACITY must be positive")
        if self.TEXT_HISTORY_MESSAGES < 2:
            errors.append(f"TEXT_HISTORY_MESSAGES must be at least 2 (got: {self.TEXT_HISTORY_MESSAGES})")
        if not 0 <= self.PREMIUM_EXPIRY_HOUR <= 23:
            errors.append(f"PREMIUM_EXPIRY_HOUR must be between 0 and 23 (got: {self.PREMIUM_EXPIRY_HOUR})")
        
        # Provider credentials required outside dev/test
        if self.ENV in ["staging", "prod"]:
            if not (self.FAL_KEY or self.GOAPI_API_KEY):
                errors.append("At least one of FAL_KEY or GOAPI_API_KEY is required")
            if not self.BOT_TOKEN:
                errors.append(f"BOT_TOKEN is required in {self.ENV}")
            if not self.WEBHOOK_SECRET:
                errors.append(f"WEBHOOK_SECRET is required in {self.ENV}")
        
        return errors
    
    def _validate(self):
        """Validate required configuration based on environment"""
        errors = self.validate()
        
        # Fail fast in staging/prod
        if errors and self.ENV in ["staging", "prod"]:
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION VALIDATION FAILED", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  ❌ {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            raise ConfigurationError("; ".join(errors))
        
        # Warn in dev
        if errors and self.ENV == "dev":
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION WARNINGS (dev mode - continuing)", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  ⚠️  {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
    
    @property
    def is_dev(self) -> bool:
        """Check if running in development mode"""
        return self.ENV == "dev"
    
    def quota_limits(self):
        """Build the free/premium limit table injected into QuotaStore"""
        from .services.quota_service import QuotaLimits, ResourceLimits
        
        return QuotaLimits(
            free=ResourceLimits(
                text=self.FREE_TEXT_REQUESTS,
                image=self.FREE_IMAGE_REQUESTS,
                video=self.FREE_VIDEO_REQUESTS,
            ),
            premium=ResourceLimits(
                text=self.PREMIUM_TEXT_REQUESTS,
                image=self.PREMIUM_IMAGE_REQUESTS,
                video=self.PREMIUM_VIDEO_REQUESTS,
            ),
        )
    
    def poll_options(self, category: str):
        """
        Get polling options for a generation category
        
        Args:
            category: 'image' or 'video'
        """
        from .services.task_poller import PollOptions
        
        if category == "image":
            return PollOptions(
                interval=self.IMAGE_POLL_INTERVAL,
                max_attempts=self.IMAGE_POLL_MAX_ATTEMPTS,
                max_transient_errors=self.POLL_MAX_TRANSIENT_ERRORS,
            )
        if category == "video":
            return PollOptions(
                interval=self.VIDEO_POLL_INTERVAL,
                max_attempts=self.VIDEO_POLL_MAX_ATTEMPTS,
                max_transient_errors=self.POLL_MAX_TRANSIENT_ERRORS,
            )
        raise ConfigurationError(f"No polling configuration for category: {category}")


# Create global config instance
config = Config()
