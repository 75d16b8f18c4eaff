"""Queue publishers used by the outbox relay."""
import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from pipeline_core.core.config import AWS_REGION, SQS_ENDPOINT_URL
from pipeline_core.core.exceptions import PublishError

log = logging.getLogger("publisher")


class QueuePublisher(Protocol):
    async def publish(self, queue_name: str, body: Dict[str, Any], attributes: Optional[Dict[str, str]] = None) -> str:
        """Publishes one message and returns the broker's message id once acknowledged."""
        ...


class SqsPublisher:
    """
    Publishes outbox payloads to SQS.

    Works with AWS SQS, LocalStack and ElasticMQ. boto3 is blocking, so each call runs in a
    worker thread to keep the relay's event loop free.
    """

    def __init__(self, region: str = AWS_REGION, endpoint_url: Optional[str] = SQS_ENDPOINT_URL, client: Any = None):
        if client is None:
            client_kwargs = {
                "service_name": "sqs",
                "region_name": region,
                "config": Config(retries={"max_attempts": 3, "mode": "standard"}),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client(**client_kwargs)
        self.client = client
        self._queue_urls: Dict[str, str] = {}

        log.info(f"SQS publisher initialized: region={region}, endpoint={endpoint_url}")

    def _queue_url(self, queue_name: str) -> str:
        # Queue URLs never change for a name, cache them for the life of the publisher
        if queue_name not in self._queue_urls:
            self._queue_urls[queue_name] = self.client.get_queue_url(QueueName=queue_name)["QueueUrl"]
        return self._queue_urls[queue_name]

    def _send(self, queue_name: str, body: Dict[str, Any], attributes: Optional[Dict[str, str]]) -> str:
        request = {
            "QueueUrl": self._queue_url(queue_name),
            "MessageBody": json.dumps(body, default=str),
        }
        if attributes:
            request["MessageAttributes"] = {
                k: {"DataType": "String", "StringValue": v} for k, v in attributes.items()
            }
        response = self.client.send_message(**request)
        return response["MessageId"]

    async def publish(self, queue_name: str, body: Dict[str, Any], attributes: Optional[Dict[str, str]] = None) -> str:
        try:
            message_id = await asyncio.to_thread(self._send, queue_name, body, attributes)
        except (BotoCoreError, ClientError) as e:
            raise PublishError(f"Publish to {queue_name} failed: {e}", request_id=body.get("request_id")) from e
        log.debug(f"Published to {queue_name}: message_id={message_id}")
        return message_id
