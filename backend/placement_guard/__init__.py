"""Placement Guard - check-in scheduling and circumvention detection backend."""
