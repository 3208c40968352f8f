"""
GEOFACE ATTENDANCE - Verified Presence Check-in

A verification pipeline that records a time-stamped presence event only after
three independent signals agree: blink-based liveness of the subject, face
descriptor similarity against enrolled samples, and physical presence inside an
approved geofence, with an advisory impossible-travel check on top.
"""

__version__ = "1.0.0"
__author__ = "Geoface Attendance Team"
__email__ = "dev@geoface-attendance.org"
