from sqlalchemy import Column, Integer, Text

from .base import Base, UTCDateTime


class RateLimitWindow(Base):
    """
    Fixed-window delivery counter per (user, channel, window length).

    A new window is a new row, so counters only ever grow within a window.
    Policies with different window lengths never share a row, even when
    their epoch-aligned starts coincide.
    """
    __tablename__ = 'rate_limit_window'

    user_id = Column(Text, primary_key=True)
    channel = Column(Text, primary_key=True)
    window_seconds = Column(Integer, primary_key=True)
    window_start = Column(UTCDateTime, primary_key=True)

    window_end = Column(UTCDateTime, nullable=False)
    count = Column(Integer, nullable=False, default=0)
    override_count = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
