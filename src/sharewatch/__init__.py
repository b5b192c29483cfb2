"""sharewatch — credential-sharing detection for media server playback."""

__version__ = "0.1.0"
