"""Domain binding data model.

Provides the SQLAlchemy model behind the database binding store: one row per claimed domain,
naming the DID the domain resolves to.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, func
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.handles.model.base import Base, domainpk, str512


class DomainBinding(Base):
    """A claimed domain and the DID it is bound to.

    The DID index is not unique. The public claim path keeps one domain per DID, but admin
    writes are allowed to bind a DID more than once.
    """

    __tablename__ = "domain_bindings"

    domain: Mapped[domainpk]
    did: Mapped[str512]
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("idx_domain_bindings_did", "did"),)
