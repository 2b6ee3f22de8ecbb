"""
Realtime channels.

Connections are joined to one channel per site their identity is a member of. Membership is
read when the connection opens; later changes do not affect an open connection.
"""

from sitegate.realtime.authorizer import ChannelAuthorizer, JoinFailureSink, channel_for_site
from sitegate.realtime.broker import ChannelBroker, Connection

__all__ = ["ChannelAuthorizer", "ChannelBroker", "Connection", "JoinFailureSink", "channel_for_site"]
