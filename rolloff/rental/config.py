"""
Configuration management using pydantic-settings

Loads configuration from environment variables and .env file
"""

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Storage
    DATABASE_PATH: str = Field(default="rolloff.db", description="SQLite database file")

    # Business context
    BUSINESS_ID: str = Field(default="default", description="Business the app operates for")
    BUSINESS_NAME: str = Field(default="Roll-Off Services", description="Name shown on invoices")
    BUSINESS_EMAIL: str = Field(
        default="office@example.com",
        description="Inbox that receives new booking request notices",
    )

    # Pricing
    TAX_RATE: Decimal = Field(default=Decimal("0.07"), description="Flat sales tax rate")
    PROCESSING_FEE_PERCENTAGE: Decimal = Field(
        default=Decimal("0.029"),
        description="Card processing percentage applied to subtotal plus tax",
    )
    PROCESSING_FEE_FIXED_CENTS: int = Field(
        default=30, description="Flat card processing fee in cents"
    )
    INCLUDE_PROCESSING_FEE: bool = Field(
        default=True, description="Pass the card processing fee on to customers"
    )

    # Invoicing
    INVOICE_NUMBER_START: int = Field(default=1001, description="First invoice number")
    INVOICE_NUMBER_RETRIES: int = Field(
        default=5, description="Attempts when an invoice number collides"
    )

    # Payments
    PAYMENT_WEBHOOK_SECRET: str = Field(
        default="whsec_development", description="Shared secret for payment callbacks"
    )
    PAYMENT_WEBHOOK_TOLERANCE_SECONDS: int = Field(
        default=300, description="Maximum age of a signed payment callback"
    )

    # Application Settings
    SITE_URL: str = Field(default="http://localhost:5000", description="Public base URL")
    SECRET_KEY: str = Field(default="rolloff-secret", description="Flask session secret")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance"""
    return settings
