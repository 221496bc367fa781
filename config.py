# User profile for body composition calculations
PROFILE = {
    "height_cm": 170,
    "age": 30,
    "gender": "male",
    "unit": "kg",
}

# BLE settings
SCALE_NAME = "MIBCS"
SCALE_ADDRESS = None

# Timeouts (seconds)
SCAN_TIMEOUT_SECONDS = 10
CONNECT_TIMEOUT_SECONDS = 15
INACTIVITY_TIMEOUT_SECONDS = 60
RESCAN_INTERVAL_SECONDS = 5

# Write the current time to the scale during the handshake
SYNC_CLOCK = False
