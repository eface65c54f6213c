from sqlalchemy.orm import declarative_base
from sqlalchemy import Column, Index, String, Text

Base = declarative_base()


class Message(Base):
    __tablename__ = "messages"

    message_id = Column(String, primary_key=True)
    from_msisdn = Column(String, nullable=False)
    to_msisdn = Column(String, nullable=False)
    ts = Column(String, nullable=False)        # ISO-8601 UTC string
    text = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)  # server time ISO-8601

    __table_args__ = (
        Index("ix_messages_ts_message_id", "ts", "message_id"),
    )

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "from": self.from_msisdn,
            "to": self.to_msisdn,
            "ts": self.ts,
            "text": self.text,
            "created_at": self.created_at,
        }
