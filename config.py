import os

from dotenv import load_dotenv

load_dotenv()

# Base de datos
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./location_auto.db")

# Autenticación
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-location-auto")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@location-auto.ma")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")

ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DEFAULT_COMPANY_NAME = os.getenv("DEFAULT_COMPANY_NAME", "Location Auto Pro")
CURRENCY = os.getenv("CURRENCY", "MAD")

# Servicio externo de IA (predicción de mantenimiento, imágenes)
AI_SERVICE_URL = os.getenv("AI_SERVICE_URL", "").rstrip("/")
AI_SERVICE_KEY = os.getenv("AI_SERVICE_KEY", "")
AI_TIMEOUT_SECONDS = float(os.getenv("AI_TIMEOUT_SECONDS", "30"))


def is_development() -> bool:
    return ENVIRONMENT.lower() in ("development", "dev", "local")
