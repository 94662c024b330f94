from .storescu import SendResult, StoreSCUSender

__all__ = ['SendResult', 'StoreSCUSender']
