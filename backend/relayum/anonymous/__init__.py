from .routes import anonymous_bp

__all__ = ["anonymous_bp"]
