"""USGS parameter codes used across the pipeline."""

FLOW = "00060"              # Discharge, cubic feet per second
TEMPERATURE = "00010"       # Water temperature
TURBIDITY_FNU = "63680"
TURBIDITY_NTU = "00076"
PH = "00400"
DISSOLVED_OXYGEN = "00300"

# Parameters requested from the instantaneous-values service
POLLED_PARAMETERS = (FLOW, TEMPERATURE, TURBIDITY_FNU)
