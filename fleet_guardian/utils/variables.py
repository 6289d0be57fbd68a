'''
Thresholds and windows shared by the normalizer, trip engine and event engine.
'''


# ----- ignition detection -----
BASE_ACC_WEIGHT = 0.6        # bit 0 of the lower 16 status bits
EXTENDED_ACC_WEIGHT = 0.2    # bit 0 of the upper 16 status bits
SPEED_SIGNAL_WEIGHT = 0.2
SPEED_SIGNAL_KMH = 3.0       # speed counted as an "on" signal above this
IGNITION_ON_THRESHOLD = 0.5  # weighted sum needed for ignition on
STRING_PARSE_CONFIDENCE = 0.9
SPEED_ON_KMH = 5.0           # speed inference: on above this
SPEED_OFF_KMH = 3.0          # speed inference: off at or below this
SPEED_INFERENCE_MIN_CONFIDENCE = 0.3
SPEED_INFERENCE_MAX_CONFIDENCE = 0.5
SPEED_INFERENCE_SPAN_KMH = 20.0  # distance from the boundary that earns max confidence

# ----- normalization -----
MAX_SPEED_KMH = 300.0

# ----- trips -----
BACKFILL_WINDOW_MINUTES = 15
TRIP_MAX_GAP_MINUTES = 30        # a gap this long closes a locally segmented trip
TRIP_MOVING_SPEED_KMH = 1.0
TRIP_MIN_DISTANCE_KM = 0.1
TRIP_MAX_HOP_KM = 10.0           # consecutive points further apart are GPS jumps
INCREMENTAL_OVERLAP_MINUTES = 60  # re-read the tail of the last window

# ----- events -----
OVERSPEED_KMH = 100.0
OVERSPEED_ERROR_KMH = 110.0
OVERSPEED_CRITICAL_KMH = 120.0
LOW_BATTERY_PERCENT = 20.0
CRITICAL_BATTERY_PERCENT = 10.0
RAPID_ACCELERATION_KMH = 30.0
HARSH_BRAKING_KMH = 40.0
MOVING_SPEED_KMH = 5.0
IDLE_SPEED_KMH = 5.0
IDLE_THRESHOLD_MINUTES = 30
IDLE_LOOKBACK_MINUTES = 120

DEFAULT_COOLDOWN_MINUTES = 5
COOLDOWN_MINUTES = {
    "vehicle_moving": 10,
}

DEFAULT_GEOFENCE_RADIUS_M = 500.0
