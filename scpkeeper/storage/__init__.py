from .organizer import FileOrganizer, OrganizeResult, OrganizeStatus

__all__ = ['FileOrganizer', 'OrganizeResult', 'OrganizeStatus']
