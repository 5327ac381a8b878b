
import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./esign.db")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "signing")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "signing")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

OTP_LENGTH = int(os.getenv("OTP_LENGTH", "6"))
OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "10"))
INVITE_CODE_TTL_MINUTES = int(os.getenv("INVITE_CODE_TTL_MINUTES", "30"))
SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))

COMPLIANCE_JURISDICTION = os.getenv("COMPLIANCE_JURISDICTION", "IN")
INCLUDE_SIGNATURE_SUMMARY = os.getenv("INCLUDE_SIGNATURE_SUMMARY", "false").lower() == "true"
CERTIFY_ON_COMPLETION = os.getenv("CERTIFY_ON_COMPLETION", "false").lower() == "true"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "false").lower() == "true"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
EMAIL_USER = os.getenv("EMAIL_USER")
EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD")
EMAIL_SENDER = os.getenv("EMAIL_SENDER", EMAIL_USER or "noreply@example.com")
EMAIL_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "E-Sign")
