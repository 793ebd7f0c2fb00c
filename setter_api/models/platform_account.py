import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from setter_api.database import Base


class PlatformAccount(Base):
    """Maps a platform page/account to the agent config answering it."""

    __tablename__ = "platform_accounts"
    __table_args__ = (UniqueConstraint("platform", "account_id", name="uq_platform_accounts_account"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    agent_config_id = Column(Uuid, ForeignKey("agent_configs.id", ondelete="CASCADE"), nullable=False)
    platform = Column(Text, nullable=False)  # MESSENGER, INSTAGRAM
    account_id = Column(Text, nullable=False)  # page id / instagram account id
    access_token = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    agent_config = relationship("AgentConfig", back_populates="accounts")
