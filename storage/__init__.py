"""
Database models and storage utilities for m365-inventory-hub
"""

from .schema import (
    Base, User, License, UserLicense, MailboxUsage, OneDriveUsage,
    SyncLog, SkuProductMapping,
)

__all__ = [
    'Base',
    'User',
    'License',
    'UserLicense',
    'MailboxUsage',
    'OneDriveUsage',
    'SyncLog',
    'SkuProductMapping',
]
