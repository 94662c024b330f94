from .settings import DEFAULT_AE_TITLE, DEFAULT_PORT, Settings

__all__ = ['Settings', 'DEFAULT_AE_TITLE', 'DEFAULT_PORT']
