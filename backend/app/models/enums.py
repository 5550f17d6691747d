"""
User roles enumeration.

Defines the role types for the local guide marketplace.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        TOURIST: Books trips and negotiates with guides (default role)
        GUIDE: Local guide offering trips in one or more provinces
        ADMIN: Operations staff with system-level access
    """
    TOURIST = "tourist"
    GUIDE = "guide"
    ADMIN = "admin"
