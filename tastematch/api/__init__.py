"""API module for TasteMatch.

This module contains the FastAPI application and route definitions.
"""
