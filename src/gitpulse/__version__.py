"""Version information for the gitpulse ingestion pipeline.

Single source of truth for version number.
Follows PEP 440 and semantic versioning principles.
"""

__version__ = "0.4.0"
__version_info__ = tuple(int(part) for part in __version__.split("."))

# Version history:
# 0.4.0 - Commit phase in ingestion jobs, catch-up sync, status view
# 0.3.0 - Qdrant-backed store, webhook retry sweep
# 0.2.0 - Resumable jobs with rate-limit blocking
# 0.1.0 - Initial release (canonical events + content-hash dedup)
