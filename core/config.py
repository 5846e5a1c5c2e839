from decouple import config

class Settings:
    # Database Configuration
    DATABASE_URL: str = config("DATABASE_URL", default="sqlite:///./deliveries.db")
    DATABASE_ECHO: bool = config("DATABASE_ECHO", default=False, cast=bool)

    # Security Configuration
    SECRET_KEY: str = config("SECRET_KEY", default="your-secret-key-here-change-in-production")
    JWT_ALGORITHM: str = config("JWT_ALGORITHM", default="HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = config("ACCESS_TOKEN_EXPIRE_MINUTES", default=60 * 24, cast=int)
    TOKEN_ISSUER: str = config("TOKEN_ISSUER", default="ktr-delivery")
    PAYMENT_WEBHOOK_SECRET: str = config("PAYMENT_WEBHOOK_SECRET", default="")

    # Routing estimates (used when no maps provider is wired in)
    AVERAGE_SPEED_KMH: float = config("AVERAGE_SPEED_KMH", default=25.0, cast=float)

    # Pricing
    PEAK_HOURS: str = config("PEAK_HOURS", default="8-10,17-20")
    CURRENCY: str = config("CURRENCY", default="INR")

    # Environment
    ENVIRONMENT: str = config("ENVIRONMENT", default="development")
    DEBUG: bool = config("DEBUG", default=True, cast=bool)

    # Logging
    LOG_LEVEL: str = config("LOG_LEVEL", default="INFO")

settings = Settings()
