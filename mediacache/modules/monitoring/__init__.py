"""Monitoring module for storage usage by tenant."""
