"""Replay pipeline: fallback method selection and result orchestration."""
