"""
API Gateway Module

Main FastAPI application exposing the referral endpoints.
"""

from .main import app, create_app

__all__ = ["app", "create_app"]
