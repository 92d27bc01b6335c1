"""Broker topology, publishing ports and delivery adapters."""

from recon_queue.broker.channels import (
    AmqpAuthoritativeStatusChannel,
    AmqpVerboseStatusChannel,
    AuthoritativeStatusPort,
    BrokerPublisher,
    PublishError,
    VerboseStatusPort,
)
from recon_queue.broker.delivery import Delivery, KombuDelivery
from recon_queue.broker.producer import JobProducer
from recon_queue.broker.topology import BrokerTopology, declare_topology, queue_stats

__all__ = [
    "AmqpAuthoritativeStatusChannel",
    "AmqpVerboseStatusChannel",
    "AuthoritativeStatusPort",
    "BrokerPublisher",
    "BrokerTopology",
    "Delivery",
    "JobProducer",
    "KombuDelivery",
    "PublishError",
    "VerboseStatusPort",
    "declare_topology",
    "queue_stats",
]
