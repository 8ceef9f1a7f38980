"""Media transform cache.

Resizes and re-encodes remote or uploaded media and stores each rendition
under a content-addressed, tenant-prefixed key.

Modules:
    - core: Configuration, logging, tracing, metrics, storage backends
    - modules.transcoding: Image and video encoders
    - modules.optimize: Transform pipeline and HTTP endpoints
    - modules.monitoring: Storage usage by tenant
    - modules.notification: Email alerts
"""
