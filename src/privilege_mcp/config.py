"""Centralized configuration for the privilege lifecycle service."""

import os


class Config:
    """
    Privilege service configuration with environment variable overrides.

    All configuration values are centralized here with sensible defaults.
    Values can be overridden via environment variables.
    """

    @staticmethod
    def _parse_port(port_str: str) -> int:
        """Parse and validate port number from string."""
        try:
            port = int(port_str)
            if not (1 <= port <= 65535):
                raise ValueError(f"Port must be 1-65535, got {port}")
            return port
        except ValueError as e:
            raise ValueError(f"Invalid PORT environment variable: {e}")

    @staticmethod
    def _parse_list(value: str) -> list[str]:
        """Parse a comma-separated environment value into a list."""
        return [item.strip() for item in value.split(",") if item.strip()]

    # ========================================================================
    # Server Configuration
    # ========================================================================
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = _parse_port.__func__(os.getenv("PORT", "8080"))
    AUDIT_LOG_PATH: str = os.getenv("AUDIT_LOG_PATH", "./privilege_audit.jsonl")

    # ========================================================================
    # Environment / Identity
    # ========================================================================
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
    PRODUCTION: bool = ENVIRONMENT.lower() == "production"
    # Placeholder identity used when no session exists outside production
    DEV_CLIENT_ID: str = os.getenv("DEV_CLIENT_ID", "dev-user-123")
    ADMIN_CLIENT_IDS: list[str] = _parse_list.__func__(os.getenv("ADMIN_CLIENT_IDS", ""))

    # ========================================================================
    # Storage Configuration
    # ========================================================================
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "memory")
    STORAGE_TIMEOUT: float = float(os.getenv("STORAGE_TIMEOUT", "5"))

    # ========================================================================
    # Redis Configuration
    # ========================================================================
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")
    REDIS_KEY_PREFIX: str = os.getenv("REDIS_KEY_PREFIX", "privileges")
    REDIS_MAX_CONNECTIONS: int = int(os.getenv("REDIS_MAX_CONNECTIONS", "50"))
    REDIS_SOCKET_CONNECT_TIMEOUT: float = float(
        os.getenv("REDIS_SOCKET_CONNECT_TIMEOUT", "2")
    )
    REDIS_SOCKET_TIMEOUT: float = float(os.getenv("REDIS_SOCKET_TIMEOUT", "2"))
    REDIS_CONNECT_RETRIES: int = int(os.getenv("REDIS_CONNECT_RETRIES", "3"))
    REDIS_CONNECT_RETRY_DELAY: float = float(os.getenv("REDIS_CONNECT_RETRY_DELAY", "0.5"))
    REDIS_CONNECT_RETRY_MAX_DELAY: float = float(
        os.getenv("REDIS_CONNECT_RETRY_MAX_DELAY", "4")
    )
    REDIS_SLOW_COMMAND_MS: float = float(os.getenv("REDIS_SLOW_COMMAND_MS", "100"))

    # ========================================================================
    # Validation Thresholds
    # ========================================================================
    NAME_MIN_LENGTH: int = int(os.getenv("NAME_MIN_LENGTH", "1"))
    DESCRIPTION_MIN_LENGTH: int = int(os.getenv("DESCRIPTION_MIN_LENGTH", "10"))
    CLIENT_ID_MIN_LENGTH: int = int(os.getenv("CLIENT_ID_MIN_LENGTH", "1"))
    URL_MIN_LENGTH: int = int(os.getenv("URL_MIN_LENGTH", "2"))

    @classmethod
    def is_admin(cls, client_id: str) -> bool:
        """Return True if client_id may act on behalf of any callee."""
        return bool(client_id) and client_id in cls.ADMIN_CLIENT_IDS

    @classmethod
    def validate(cls) -> bool:
        """
        Validate configuration consistency.

        Checks:
        - STORAGE_BACKEND is a known backend
        - Timeouts and pool sizes are > 0
        - Production does not run on the in-memory backend

        Returns:
            True if validation passes

        Raises:
            ValueError: If validation fails
        """
        errors = []

        if cls.STORAGE_BACKEND not in {"memory", "redis"}:
            errors.append(
                f"STORAGE_BACKEND must be 'memory' or 'redis', got '{cls.STORAGE_BACKEND}'"
            )
        elif cls.PRODUCTION and cls.STORAGE_BACKEND == "memory":
            errors.append("STORAGE_BACKEND=memory is not allowed in production")

        if cls.STORAGE_TIMEOUT <= 0:
            errors.append(f"STORAGE_TIMEOUT must be > 0, got {cls.STORAGE_TIMEOUT}")

        if not cls.DEV_CLIENT_ID and not cls.PRODUCTION:
            import warnings

            warnings.warn(
                "DEV_CLIENT_ID is empty - calls without a session will have no identity."
            )

        # Validate Redis settings
        if cls.REDIS_MAX_CONNECTIONS <= 0:
            errors.append(
                f"REDIS_MAX_CONNECTIONS must be > 0, got {cls.REDIS_MAX_CONNECTIONS}"
            )
        if cls.REDIS_SOCKET_CONNECT_TIMEOUT <= 0:
            errors.append(
                "REDIS_SOCKET_CONNECT_TIMEOUT must be > 0, "
                f"got {cls.REDIS_SOCKET_CONNECT_TIMEOUT}"
            )
        if cls.REDIS_SOCKET_TIMEOUT <= 0:
            errors.append(
                f"REDIS_SOCKET_TIMEOUT must be > 0, got {cls.REDIS_SOCKET_TIMEOUT}"
            )
        if cls.REDIS_CONNECT_RETRIES <= 0:
            errors.append(
                f"REDIS_CONNECT_RETRIES must be > 0, got {cls.REDIS_CONNECT_RETRIES}"
            )

        for name in (
            "NAME_MIN_LENGTH",
            "DESCRIPTION_MIN_LENGTH",
            "CLIENT_ID_MIN_LENGTH",
            "URL_MIN_LENGTH",
        ):
            if getattr(cls, name) < 1:
                errors.append(f"{name} must be >= 1, got {getattr(cls, name)}")

        if errors:
            raise ValueError(f"Config validation failed: {'; '.join(errors)}")

        return True
