import os
from dotenv import load_dotenv

load_dotenv() # Optional: Load .env file

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("APP_PORT", "8002")) # Port for this service

# Mean earth radius used by the haversine distance
EARTH_RADIUS_KM = 6371.0
# Distances are rounded to whole metres before pricing
DISTANCE_DECIMALS = int(os.getenv("PRICING_DISTANCE_DECIMALS", "3"))
CURRENCY = os.getenv("PRICING_CURRENCY", "IDR")
