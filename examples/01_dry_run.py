"""Dry Run Example.

Provisions the interruption queue and rules in a real AWS account, then
drains the queue against an in-memory node list instead of a cluster:
- Infrastructure is created for one owner
- A sample spot interruption is sent through the queue
- The in-memory node is cordoned, evicted and deleted
- Events are printed as they are emitted

Everything is torn down when the example finishes.
"""

import asyncio

from injector import Injector, Module, provider, singleton

from reclaim import InfrastructureManager, InterruptionController, LogConfig, Settings, setup_logging
from reclaim.bus import EventBus
from reclaim.events import EventSink, NodeEvent
from reclaim.nodes import InMemoryNodeStore, Node, NodeStore
from reclaim.operator import ReclaimModule
from reclaim.owners import InMemoryOwnerStore, OwnerKey, OwnerStore
from reclaim.providers.aws import AWSModule, SQSProvider

bus = EventBus()


@bus.on()
def print_event(event: NodeEvent) -> None:
    print(f"[{event.type}] {event.reason}: {event.message}")


class DryRunModule(Module):
    @singleton
    @provider
    def provide_nodes(self) -> NodeStore:
        return InMemoryNodeStore([
            Node(
                name="ip-10-0-1-23.ec2.internal",
                provider_id="aws:///us-east-1a/i-0123456789abcdef0",
                labels={
                    "node.kubernetes.io/instance-type": "m5.large",
                    "topology.kubernetes.io/zone": "us-east-1a",
                    "karpenter.sh/capacity-type": "spot",
                },
            )
        ])

    @singleton
    @provider
    def provide_owners(self) -> OwnerStore:
        return InMemoryOwnerStore()

    @singleton
    @provider
    def provide_events(self) -> EventSink:
        return bus


async def main() -> None:
    settings = Settings(cluster_name="reclaim-dry-run")
    injector = Injector([AWSModule(settings), DryRunModule(), ReclaimModule()])
    infrastructure = injector.get(InfrastructureManager)
    controller = injector.get(InterruptionController)
    sqs = injector.get(SQSProvider)

    await infrastructure.ensure(OwnerKey("", "default"))
    try:
        await sqs.send_message({
            "source": "aws.ec2",
            "detail-type": "EC2 Spot Instance Interruption Warning",
            "detail": {"instance-id": "i-0123456789abcdef0", "instance-action": "terminate"},
        })
        outcomes = await controller.poll_once()
        print(f"Outcomes: {[str(o) for o in outcomes]}")
    finally:
        await infrastructure.teardown()


if __name__ == "__main__":
    setup_logging(LogConfig(level="DEBUG"))
    asyncio.run(main())
