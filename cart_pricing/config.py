import os
import logging
from dotenv import load_dotenv

load_dotenv()

CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "$")
# minor units per major unit, a power of ten: 100 cents -> 1 dollar
CURRENCY_MINOR_UNITS = int(os.getenv("CURRENCY_MINOR_UNITS", "100"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))


def configure_logging() -> None:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")
