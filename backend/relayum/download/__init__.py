from .routes import download_bp

__all__ = ["download_bp"]
