"""Logging and metrics for fleetguard."""
