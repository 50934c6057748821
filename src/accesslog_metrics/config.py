import os

# ----------------------------
# Config
# ----------------------------
BIND = os.getenv("ALM_BIND", "127.0.0.1:9898")
LOG_LEVEL = os.getenv("ALM_LOG_LEVEL", "info")

# Cool-down before reopening the file after rotation, removal or absence
REOPEN_DELAY_S = float(os.getenv("ALM_REOPEN_DELAY_S", "2"))

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
