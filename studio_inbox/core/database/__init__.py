"""Database module: models, connection and the inbox data store"""
from .models import (
    Base, Account, Folder, Message, Rule, Contact, Template, utcnow,
)
from .connection import get_db, init_db, create_tables, get_session_factory

__all__ = [
    'Base',
    'Account',
    'Folder',
    'Message',
    'Rule',
    'Contact',
    'Template',
    'utcnow',
    'get_db',
    'init_db',
    'create_tables',
    'get_session_factory',
]
