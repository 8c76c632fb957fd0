"""VirtualFeed service: the FastAPI app plus command line helpers."""

from __future__ import annotations

from app.main import app, create_app

from .cli import main, scrape_once

__all__ = ["app", "create_app", "main", "scrape_once"]
