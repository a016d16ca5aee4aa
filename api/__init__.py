"""api/ -- FastAPI boundary layer for the Whisper identity core."""
