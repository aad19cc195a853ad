"""Fire-and-forget delivery of scan outcomes to students."""
import json
import logging
from typing import Dict, Optional

import redis

logger = logging.getLogger(__name__)


class NotificationService:
    """Publishes outcomes on a Redis channel, or just logs them.

    Delivery never affects a decision: every failure is logged and dropped.
    """

    def __init__(self, client: Optional[redis.Redis] = None,
                 channel: str = 'attendance:outcomes'):
        self.client = client
        self.channel = channel

    @classmethod
    def from_config(cls, config) -> 'NotificationService':
        url = config.get('REDIS_URL')
        client = None
        if url:
            # A stalled server must not hold up the scan response
            timeout = config.get('NOTIFICATION_TIMEOUT_SECONDS', 2.0)
            client = redis.Redis.from_url(url, decode_responses=True,
                                          socket_timeout=timeout,
                                          socket_connect_timeout=timeout)
        return cls(client, config.get('NOTIFICATION_CHANNEL', 'attendance:outcomes'))

    def notify(self, student_id: int, outcome: Dict) -> bool:
        message = {'student_id': student_id, 'outcome': outcome}

        if self.client is None:
            logger.info("Attendance outcome for student %s: %s",
                        student_id, outcome.get('reason_code'))
            return True

        try:
            self.client.publish(self.channel, json.dumps(message, default=str))
            return True
        except redis.RedisError as e:
            logger.warning("Could not publish outcome for student %s: %s", student_id, e)
        except (TypeError, ValueError) as e:
            logger.warning("Unserializable outcome for student %s: %s", student_id, e)
        return False
