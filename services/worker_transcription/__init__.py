"""Transcription Pipeline - Worker pool service."""
