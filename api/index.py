"""
Serverless entry point (Vercel) for the car rental API.

Vercel picks up `app` from this module; the project modules live one
directory up, next to main.py.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from main import app  # noqa: E402

__all__ = ["app"]
