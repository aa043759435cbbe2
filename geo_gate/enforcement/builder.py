"""
Set builder: materializes one kernel address set per country and family.
"""

import asyncio
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.errors import DatasetUnavailable, KernelPrimitiveFailure
from ..core.logging_config import get_logger, log_error, log_warning
from ..core.objects import AddressFamily, CIDRBlock, CountryCode
from ..datasets.loader import CountryLike, DatasetSource
from ..devices.base import KernelBackend

logger = get_logger(__name__)

SET_PREFIX = "country_"


def set_name(country: CountryLike, family: AddressFamily) -> str:
    """Kernel set name for a country, e.g. ``country_v4_AR``."""
    return f"{SET_PREFIX}{family.tag}_{CountryCode.parse(country)}"


def is_engine_set(name: str) -> bool:
    return name.startswith(SET_PREFIX)


@dataclass
class SetOutcome:
    """What happened to one set during a build."""

    name: str
    country: str
    family: AddressFamily
    entries: Optional[int] = None
    dataset_error: Optional[DatasetUnavailable] = None
    kernel_error: Optional[KernelPrimitiveFailure] = None

    @property
    def ok(self) -> bool:
        """The set exists and can be referenced by chains."""
        return self.kernel_error is None

    @property
    def degraded(self) -> bool:
        """The set kept its previous contents because the dataset was unavailable."""
        return self.dataset_error is not None


@dataclass
class BuildReport:
    outcomes: Dict[str, SetOutcome] = field(default_factory=dict)

    @property
    def dataset_errors(self) -> List[DatasetUnavailable]:
        return [o.dataset_error for o in self.outcomes.values() if o.dataset_error]

    @property
    def failed_sets(self) -> Dict[str, KernelPrimitiveFailure]:
        return {
            name: o.kernel_error
            for name, o in self.outcomes.items()
            if o.kernel_error is not None
        }


class SetBuilder:
    """
    Loads country datasets and replaces the membership of the matching sets.

    Datasets are loaded concurrently on a pool of ``workers`` threads. Each
    load may run for ``timeout`` seconds once a worker is free for it, so time
    spent queueing behind other countries never counts against a load. Kernel
    calls are then issued one at a time.
    """

    def __init__(
        self,
        backend: KernelBackend,
        dataset: DatasetSource,
        timeout: float = 30.0,
        workers: int = 8,
    ):
        self.backend = backend
        self.dataset = dataset
        self.timeout = timeout
        self.workers = workers

    async def load(
        self,
        country: CountryCode,
        family: AddressFamily,
        executor: Executor,
        slots: asyncio.Semaphore,
    ) -> Tuple[List[CIDRBlock], Optional[DatasetUnavailable]]:
        """Load one dataset; failures are returned, not raised."""
        await slots.acquire()
        future = asyncio.get_running_loop().run_in_executor(
            executor, self.dataset.load, country, family
        )
        # The slot stays taken until the thread returns, even after a timeout
        future.add_done_callback(lambda done: _release(slots, done))

        try:
            blocks = await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout)
        except asyncio.TimeoutError:
            return [], DatasetUnavailable(
                str(country), family.value, f"timed out after {self.timeout}s"
            )
        except DatasetUnavailable as e:
            return [], e
        except Exception as e:
            log_error(f"Dataset source failed for {country}/{family}: {e!r}", logger)
            return [], DatasetUnavailable(
                str(country), family.value, f"{type(e).__name__}: {e}"
            )
        return blocks, None

    async def build(
        self,
        countries: Iterable[CountryLike],
        families: Iterable[AddressFamily],
    ) -> BuildReport:
        """Create or refresh the set of every country for every family."""
        codes = sorted({CountryCode.parse(country) for country in countries})
        families = list(families)
        pairs = [(code, family) for code in codes for family in families]

        slots = asyncio.Semaphore(self.workers)
        executor = ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="geo-gate-dataset"
        )
        try:
            loaded = await asyncio.gather(
                *(self.load(code, family, executor, slots) for code, family in pairs)
            )
        finally:
            # Loads that timed out may still be running; do not wait for them
            executor.shutdown(wait=False)

        report = BuildReport()
        for (code, family), (blocks, dataset_error) in zip(pairs, loaded):
            name = set_name(code, family)
            outcome = SetOutcome(name=name, country=str(code), family=family)
            report.outcomes[name] = outcome

            try:
                if dataset_error is None:
                    await self.backend.replace_set(name, family, blocks)
                    outcome.entries = len(blocks)
                    logger.debug("Set %s holds %s entries", name, len(blocks))
                else:
                    # Keep whatever the set held before; create it empty if new
                    outcome.dataset_error = dataset_error
                    log_warning(f"{dataset_error}; keeping previous contents of {name}", logger)
                    await self.backend.create_set(name, family)
            except KernelPrimitiveFailure as e:
                outcome.kernel_error = e
                log_error(f"Failed to build set {name}: {e}", logger)

        return report


def _release(slots: asyncio.Semaphore, done: "asyncio.Future") -> None:
    slots.release()
    if not done.cancelled():
        # Retrieve the outcome so a late failure is not reported as unhandled
        done.exception()
