from enum import Enum


class Role(str, Enum):
    OWNER = "owner"
    MEMBER = "member"


class NoticeVariant(str, Enum):
    DEFAULT = "default"
    DESTRUCTIVE = "destructive"


# Table names in the relational store
ORGANIZATIONS_TABLE = "organizations"
MEMBERSHIPS_TABLE = "organization_user"
PROFILES_TABLE = "users"
