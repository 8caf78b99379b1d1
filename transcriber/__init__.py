"""Transcription Pipeline - Core modules.

Provides:
- Durable priority job queue with leases, retry/backoff and stall recovery
- Segment extraction and confidence aggregation for ASR output
- Status/notification driver for the transcription state machine
"""

__version__ = "0.1.0"
