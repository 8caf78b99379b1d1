"""Transcription Pipeline - Utility modules."""
