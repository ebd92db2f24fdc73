import os
from decimal import Decimal

# Environment
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MINUTES = int(os.getenv("TOKEN_EXPIRE_MINUTES", 60 * 24))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")

# Fixed fees added on top of the item subtotal of every order
DELIVERY_FEE = Decimal(os.getenv("DELIVERY_FEE", "40"))
SERVICE_FEE = Decimal(os.getenv("SERVICE_FEE", "5"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 8000))

# Used when a shop registers without a phone number
DEFAULT_SHOP_PHONE = "9999999999"
