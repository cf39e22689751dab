"""
Order Notifications
===================
Fire-and-forget triggers for the order-confirmation email.

- LogNotifier: development mode, logs what would be sent
- RabbitMQNotifier: publishes ``order.paid`` on a topic exchange for the
  email worker (persistent messages, robust connection)

Email content is owned by the email worker; this module only decides when
a confirmation fires and what data it carries.

pip install aio-pika structlog
"""

from abc import ABC, abstractmethod
from typing import Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection
import structlog

from schemas.orders import OrderConfirmation, utcnow


class INotifier(ABC):

    @abstractmethod
    async def send_order_confirmation(self, confirmation: OrderConfirmation) -> None:
        """Raise on failure; callers isolate the error"""
        pass

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass


class LogNotifier(INotifier):
    """Mock email sender used when no broker is configured"""

    def __init__(self):
        self._logger = structlog.get_logger().bind(component="log_notifier")

    async def send_order_confirmation(self, confirmation: OrderConfirmation) -> None:
        self._logger.info(
            "order_confirmation_mocked",
            order_id=confirmation.order_id,
            to=confirmation.customer_email,
            item_count=len(confirmation.items),
            total_cents=confirmation.total_cents,
            currency=confirmation.currency,
        )


class RabbitMQNotifier(INotifier):
    """Publishes confirmation requests to the email worker"""

    ROUTING_KEY = "order.paid"

    def __init__(self, url: str, exchange_name: str):
        self._url = url
        self._exchange_name = exchange_name
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchange: Optional[AbstractExchange] = None
        self._logger = structlog.get_logger().bind(component="rabbitmq_notifier")

    async def connect(self) -> None:
        """Establish RabbitMQ connection and declare the topic exchange"""
        try:
            self._connection = await aio_pika.connect_robust(self._url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                self._exchange_name,
                ExchangeType.TOPIC,
                durable=True,
            )
            self._logger.info("connected", exchange=self._exchange_name)
        except Exception as e:
            self._logger.error("connection_failed", error=str(e))
            raise

    async def close(self) -> None:
        if self._channel:
            await self._channel.close()
        if self._connection:
            await self._connection.close()
        self._logger.info("disconnected")

    async def send_order_confirmation(self, confirmation: OrderConfirmation) -> None:
        if self._exchange is None:
            raise ConnectionError("RabbitMQ not connected")

        message = Message(
            body=confirmation.model_dump_json().encode(),
            delivery_mode=DeliveryMode.PERSISTENT,
            content_type="application/json",
            message_id=f"confirmation:{confirmation.order_id}",
            timestamp=utcnow(),
            headers={"event_type": self.ROUTING_KEY},
        )
        await self._exchange.publish(message, routing_key=self.ROUTING_KEY)
        self._logger.info("confirmation_published", order_id=confirmation.order_id)
