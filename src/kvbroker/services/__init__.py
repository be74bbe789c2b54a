"""Services built on the cache facade."""

from kvbroker.services.temp_storage import TempStorage

__all__ = ["TempStorage"]
