"""
API Routes
"""
from studio_inbox.api.routes import accounts, folders, messages, search, contacts, rules, templates

__all__ = ["accounts", "folders", "messages", "search", "contacts", "rules", "templates"]
