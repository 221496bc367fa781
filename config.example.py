# User profile for body composition calculations
# Copy this file to config.py and update with your values
PROFILE = {
    "height_cm": 170,  # Your height in centimeters
    "age": 30,         # Your age in years
    "gender": "male",  # "male" or "female"
    "unit": "kg",      # Unit shown on the scale: "kg", "lbs" or "catty"
}

# BLE settings
SCALE_NAME = "MIBCS"   # Advertised name, matched exactly
SCALE_ADDRESS = None   # e.g. "C8:47:8C:12:34:56" to pick the scale by address instead

# Timeouts (seconds)
SCAN_TIMEOUT_SECONDS = 10
CONNECT_TIMEOUT_SECONDS = 15
INACTIVITY_TIMEOUT_SECONDS = 60  # Disconnect when the scale stays silent this long
RESCAN_INTERVAL_SECONDS = 5

# Write the current time to the scale during the handshake
SYNC_CLOCK = False
