# models.py — Database models for MBEE
# - Composite string primary keys (org:project:branch:element)
# - Shared extension columns on every table (custom data, audit + archive fields)
# - Ownership fields are immutable once set (enforced with @validates)

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, BigInteger, ForeignKey, Text, Index,
)
from sqlalchemy.orm import declarative_base, validates

from validators import ensure_unchanged

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# Ids of the elements every project is created with
ROOT_ELEMENTS = {
    "model": "Model",
    "__mbee__": "__mbee__",
    "holding_bin": "holding bin",
    "undefined": "undefined element",
}
MASTER_BRANCH = "master"


class ExtensionMixin:
    """Columns shared by every MBEE record."""

    custom = Column(JSON, nullable=False, default=dict)
    archived = Column(Boolean, nullable=False, default=False, index=True)
    archived_on = Column(DateTime(timezone=True), nullable=True)
    archived_by = Column(String, nullable=True)
    created_by = Column(String, nullable=True)
    last_modified_by = Column(String, nullable=True)
    created_on = Column(DateTime(timezone=True), default=utcnow)
    updated_on = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# USERS
# ============================================================

class User(ExtensionMixin, Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)  # the username
    password_hash = Column(String, nullable=True)
    email = Column(String, nullable=False, default="")
    fname = Column(String, nullable=False, default="")
    preferred_name = Column(String, nullable=False, default="")
    lname = Column(String, nullable=False, default="")
    admin = Column(Boolean, nullable=False, default=False, index=True)
    provider = Column(String, nullable=False, default="local")
    failed_logins = Column(JSON, nullable=False, default=list)

    @property
    def username(self) -> str:
        return self.id


# ============================================================
# ORGANIZATIONS
# ============================================================

class Organization(ExtensionMixin, Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    permissions = Column(JSON, nullable=False, default=dict)


# ============================================================
# PROJECTS
# ============================================================

class Project(ExtensionMixin, Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True)  # org:project
    org = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    permissions = Column(JSON, nullable=False, default=dict)
    visibility = Column(String, nullable=False, default="private")

    @validates("org")
    def _validate_org(self, key, value):
        return ensure_unchanged(key, self.org, value)


# ============================================================
# BRANCHES
# ============================================================

class Branch(ExtensionMixin, Base):
    __tablename__ = "branches"

    id = Column(String, primary_key=True)  # org:project:branch
    project = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    source = Column(String, nullable=True)
    tag = Column(Boolean, nullable=False, default=False)

    @validates("project")
    def _validate_project(self, key, value):
        return ensure_unchanged(key, self.project, value)


# ============================================================
# ELEMENTS
# ============================================================

class Element(ExtensionMixin, Base):
    __tablename__ = "elements"

    id = Column(String, primary_key=True)  # org:project:branch:element
    project = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    branch = Column(String, ForeignKey("branches.id"), nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    type = Column(String, nullable=False, default="", index=True)
    documentation = Column(Text, nullable=False, default="")
    parent = Column(String, nullable=True, index=True)
    source = Column(String, nullable=True, index=True)
    target = Column(String, nullable=True, index=True)
    artifact = Column(String, nullable=True)

    __table_args__ = (
        Index("idx_element_branch_parent", "branch", "parent"),
    )

    @validates("project", "branch")
    def _validate_owner(self, key, value):
        return ensure_unchanged(key, getattr(self, key), value)


# ============================================================
# ARTIFACTS
# ============================================================

class Artifact(ExtensionMixin, Base):
    __tablename__ = "artifacts"

    id = Column(String, primary_key=True)  # org:project:branch:artifact
    project = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    branch = Column(String, ForeignKey("branches.id"), nullable=False, index=True)
    filename = Column(String, nullable=True)
    location = Column(String, nullable=True)
    description = Column(Text, nullable=False, default="")
    size = Column(BigInteger, nullable=True)
    strategy = Column(String, nullable=False)

    @validates("project", "branch", "strategy")
    def _validate_owner(self, key, value):
        return ensure_unchanged(key, getattr(self, key), value)


# ============================================================
# WEBHOOKS
# ============================================================

class Webhook(ExtensionMixin, Base):
    __tablename__ = "webhooks"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    type = Column(String, nullable=False)  # Outgoing | Incoming
    triggers = Column(JSON, nullable=False, default=list)
    response = Column(JSON, nullable=True)
    token = Column(String, nullable=True)  # stored as "creator:token"
    token_location = Column(String, nullable=True)
    reference = Column(String, nullable=False, default="", index=True)

    @validates("type", "reference")
    def _validate_fixed(self, key, value):
        return ensure_unchanged(key, getattr(self, key), value)


# ============================================================
# TOKEN REVOCATION
# ============================================================

class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    jti = Column(String, primary_key=True)  # JWT ID
    username = Column(String, nullable=False, index=True)
    revoked_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)
