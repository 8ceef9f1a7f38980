"""Application modules.

- transcoding: Pillow image encoder and ffmpeg video encoder
- optimize: Cache keys, tenants, origin fetch and the transform pipeline
- monitoring: Storage usage aggregation
- notification: Operator alerts
"""
