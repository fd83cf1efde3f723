import os

from dotenv import load_dotenv

load_dotenv()

TEXT_MODEL = os.environ.get("TEXT_MODEL", "gemini-3-pro-preview")
IMAGE_MODEL = os.environ.get("IMAGE_MODEL", "gemini-3-pro-image-preview")

PRODUCT_BRAND = os.environ.get("PRODUCT_BRAND", "USANA")

MAX_RETRIES = int(os.environ.get("MAX_RETRIES", "3"))
GEMINI_TIMEOUT_MS = int(os.environ.get("GEMINI_TIMEOUT_MS", "300000"))

PORT = int(os.environ.get("PORT", "5001"))

BILLING_DOCS_URL = "https://ai.google.dev/gemini-api/docs/billing"
