from .whale_db import WhaleDB

__all__ = ["WhaleDB"]
