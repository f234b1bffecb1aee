import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.environ.get("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.environ.get("DATABASE_NAME", "exam_engine")

SECRET_KEY = os.environ.get("SECRET_KEY", "supersecretkey")  # override in deployment
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.environ.get("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 8))

CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

SEED_ADMIN_EMAIL = os.environ.get("SEED_ADMIN_EMAIL", "admin@university.edu")
SEED_ADMIN_PASSWORD = os.environ.get("SEED_ADMIN_PASSWORD", "")

REFRESH_SECRET_KEY = os.environ.get("REFRESH_SECRET_KEY", "superrefreshkey")  # override in deployment
REFRESH_TOKEN_EXPIRE_DAYS = int(os.environ.get("REFRESH_TOKEN_EXPIRE_DAYS", 7))

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", 8000))
