import os

DB_URL = os.getenv("DB_URL", "sqlite://water_monitor.sqlite3")

BOT_TOKEN = os.getenv("BOT_TOKEN", "")

# Relay function that authenticates the device and forwards on/off commands
RELAY_URL = os.getenv("RELAY_URL", "http://localhost:54321/functions/v1/esp32-control")
RELAY_API_KEY = os.getenv("RELAY_API_KEY", "")
RELAY_TIMEOUT_SEC = float(os.getenv("RELAY_TIMEOUT_SEC", "10"))

EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
PUSH_TIMEOUT_SEC = float(os.getenv("PUSH_TIMEOUT_SEC", "10"))

POLL_INTERVAL_SEC = float(os.getenv("POLL_INTERVAL_SEC", "1"))

DEFAULT_WARNING_TIME = 300   # 5 minutes
DEFAULT_SHUTOFF_TIME = 600   # 10 minutes
DEFAULT_BRIGHTNESS = 100
DEFAULT_NOTIFICATIONS_ENABLED = True

EVENT_HISTORY_LIMIT = 50

SUMMARY_HOUR = 20
REMINDERS_INTERVAL_SEC = 30

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

ADMIN_HOST = os.getenv("ADMIN_HOST", "0.0.0.0")
ADMIN_PORT = int(os.getenv("ADMIN_PORT", "8000"))
