"""User model (identity collaborator view)."""
from sqlalchemy import Column, ForeignKey, String, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import relationship

from tenancy.models.base import BaseModel
from tenancy.models.enums import WorkspaceRole


class User(BaseModel):
    """User known to the identity service.

    A user belongs to at most one workspace. ``workspace_id`` and
    ``workspace_role`` are set only by the acceptance transactor (or at
    workspace creation for the owner).
    """

    __tablename__ = "users"

    email = Column(String(255), nullable=False, unique=True, index=True)
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    workspace_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("workspaces.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    workspace_role = Column(
        SQLEnum(
            WorkspaceRole,
            name="workspace_role",
            native_enum=False,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=True,
    )

    workspace = relationship("Workspace", foreign_keys=[workspace_id])

    @property
    def display_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.email

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, workspace_id={self.workspace_id})>"
