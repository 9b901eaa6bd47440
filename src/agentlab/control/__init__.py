"""Control Plane - coordinator execution.

Coordinators:
- LeaseReconciler: expires sandboxes whose lease has run out
- StateReconciler: lines sandbox rows up with the hypervisor
- ArtifactGC: removes artifacts past their profile retention window

Each runs as its own task; a crash in one tick is logged by the
coordinator and does not stop the others.
"""

import asyncio
import logging
from collections.abc import Sequence

from agentlab.control.coordinator import CoordinatorBase
from agentlab.core.logging_schema import LogEvent

logger = logging.getLogger(__name__)


async def run_control_plane(coordinators: Sequence[CoordinatorBase]) -> None:
    """Run all coordinators until cancelled.

    Args:
        coordinators: Coordinators sharing the daemon's store
    """
    try:
        await asyncio.gather(*(c.run() for c in coordinators))
    except asyncio.CancelledError:
        logger.info("Control plane cancelled", extra={"event": LogEvent.APP_STOPPED})
        raise
    except Exception as e:
        logger.exception(
            "Control plane error",
            extra={"event": LogEvent.APP_STOPPED, "error": str(e)},
        )
    finally:
        for coordinator in coordinators:
            coordinator.stop()
