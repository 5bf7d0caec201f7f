# sendbox/core/profiles/__init__.py
"""
Профили пользователей: KYC и аккаунт для выплат.
"""

from sendbox.core.profiles.models import AuthContext, Profile
from sendbox.core.profiles.repository import ProfileRepository

__all__ = [
    "AuthContext",
    "Profile",
    "ProfileRepository",
]
