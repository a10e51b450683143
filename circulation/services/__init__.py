"""Circulation Desk - Services Package

This package contains modules for outbound integrations:
- HTTP client abstraction
- Overdue notification dispatchers
"""
