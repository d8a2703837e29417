"""
Runtime configuration

Values come from the environment (optionally a .env file) with defaults
matching the production deployment.
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

LOGLEVEL = os.getenv("LOGLEVEL", "INFO").upper()

CURRENCY = os.getenv("CURRENCY", "INR")
CONVENIENCE_FEE = float(os.getenv("CONVENIENCE_FEE", "2"))  # fixed fee on online payments
TAX_RATE = float(os.getenv("TAX_RATE", "0"))
DELIVERY_FEE = float(os.getenv("DELIVERY_FEE", "30"))

PENDING_ORDER_TTL_MINUTES = int(os.getenv("PENDING_ORDER_TTL_MINUTES", "30"))
MAX_RESERVATIONS_PER_SLOT = int(os.getenv("MAX_RESERVATIONS_PER_SLOT", "10"))

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_SECRET = os.getenv("RAZORPAY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")
RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")

STAFF_KEY_HASH = os.getenv("STAFF_KEY_HASH")
CRON_SECRET = os.getenv("CRON_SECRET")

# Floor plan used when a restaurant has not configured its own tables
DEFAULT_TABLES = [
    {"number": "T-1", "capacity": 2},
    {"number": "T-2", "capacity": 2},
    {"number": "T-3", "capacity": 4},
    {"number": "T-4", "capacity": 4},
    {"number": "T-5", "capacity": 4},
    {"number": "T-6", "capacity": 6},
    {"number": "T-7", "capacity": 6},
    {"number": "T-8", "capacity": 8},
    {"number": "T-9", "capacity": 2},
    {"number": "T-10", "capacity": 4},
]

# Hourly slots shown on the table grid, 11:00 to 23:00
STANDARD_TIME_SLOTS = [f"{hour:02d}:00" for hour in range(11, 24)]
