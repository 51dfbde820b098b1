from .cron import app

__all__ = ["app"]
