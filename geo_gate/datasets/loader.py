"""
Country CIDR dataset sources.

The on-disk and HTTP layouts follow the ipverse ``rir-ip`` repository::

    <root>/<country code, lower case>/ipv4-aggregated.txt
    <root>/<country code, lower case>/ipv6-aggregated.txt

Each file holds one prefix per line; ``#`` starts a comment.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple, Union

import requests

from ..core.errors import DatasetUnavailable
from ..core.logging_config import get_logger
from ..core.objects import AddressFamily, CIDRBlock, CountryCode

logger = get_logger(__name__)

CountryLike = Union[str, CountryCode]


def dataset_filename(family: AddressFamily) -> str:
    return f"{family.value}-aggregated.txt"


def parse_cidr_lines(
    lines: Iterable[str], family: AddressFamily, source: str = "<dataset>"
) -> List[CIDRBlock]:
    """
    Parse dataset lines into blocks of ``family``.

    Comments, blank lines, malformed prefixes and prefixes of the other
    family are skipped. Order is preserved and duplicates are dropped.
    """
    blocks: List[CIDRBlock] = []
    seen = set()
    skipped = 0

    for line_num, raw in enumerate(lines, 1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue

        token = line.split()[0]
        try:
            block = CIDRBlock.parse(token)
        except ValueError:
            logger.debug("%s:%s: skipping malformed entry %r", source, line_num, token)
            skipped += 1
            continue

        if block.family is not family:
            logger.debug(
                "%s:%s: skipping %s entry %s", source, line_num, block.family, token
            )
            skipped += 1
            continue

        if block.cidr not in seen:
            seen.add(block.cidr)
            blocks.append(block)

    if skipped:
        logger.debug("%s: skipped %s unusable entries", source, skipped)
    return blocks


class DatasetSource(ABC):
    """Supplies the CIDR blocks of a country for one address family."""

    @abstractmethod
    def load(self, country: CountryLike, family: AddressFamily) -> List[CIDRBlock]:
        """
        Return the blocks for ``country`` and ``family``.

        A country with no data yields an empty list. Raises DatasetUnavailable
        when data exists but cannot be read.
        """

    def describe(self) -> str:
        return self.__class__.__name__


class DirectoryDatasetSource(DatasetSource):
    """Reads per-country lists from a local directory tree."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, country: CountryLike, family: AddressFamily) -> Path:
        code = str(CountryCode.parse(country)).lower()
        return self.root / code / dataset_filename(family)

    def load(self, country: CountryLike, family: AddressFamily) -> List[CIDRBlock]:
        path = self.path_for(country, family)
        try:
            with open(path, encoding="utf-8", errors="replace") as f:
                blocks = parse_cidr_lines(f, family, source=str(path))
        except FileNotFoundError:
            logger.debug("No %s dataset for %s at %s", family, country, path)
            return []
        except OSError as e:
            raise DatasetUnavailable(str(country), family.value, str(e))

        logger.debug("Loaded %s %s blocks for %s from %s", len(blocks), family, country, path)
        return blocks

    def describe(self) -> str:
        return f"directory {self.root}"


class HttpDatasetSource(DatasetSource):
    """Fetches per-country lists over HTTP."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, country: CountryLike, family: AddressFamily) -> str:
        code = str(CountryCode.parse(country)).lower()
        return f"{self.base_url}/{code}/{dataset_filename(family)}"

    def fetch_text(self, country: CountryLike, family: AddressFamily) -> Optional[str]:
        """Raw list text, or None when the server has no list for the country."""
        url = self.url_for(country, family)
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise DatasetUnavailable(str(country), family.value, str(e))

        if response.status_code == 404:
            logger.debug("No %s dataset for %s at %s", family, country, url)
            return None

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            raise DatasetUnavailable(str(country), family.value, str(e))

        return response.text

    def load(self, country: CountryLike, family: AddressFamily) -> List[CIDRBlock]:
        text = self.fetch_text(country, family)
        if text is None:
            return []
        return parse_cidr_lines(
            text.splitlines(), family, source=self.url_for(country, family)
        )

    def download(
        self,
        countries: Iterable[CountryLike],
        families: Iterable[AddressFamily],
        destination: Union[str, Path],
    ) -> Dict[Tuple[str, AddressFamily], int]:
        """
        Mirror the lists of ``countries`` into ``destination`` using the
        directory layout. Returns the number of prefixes written per list;
        countries without data are skipped.
        """
        destination = Path(destination)
        written: Dict[Tuple[str, AddressFamily], int] = {}
        families = list(families)

        for country in countries:
            code = str(CountryCode.parse(country))
            for family in families:
                text = self.fetch_text(code, family)
                if text is None:
                    continue

                blocks = parse_cidr_lines(text.splitlines(), family)
                target = destination / code.lower() / dataset_filename(family)
                target.parent.mkdir(parents=True, exist_ok=True)

                # Write next to the target and rename so readers never see a partial file
                tmp = target.with_suffix(".tmp")
                tmp.write_text("".join(f"{block.cidr}\n" for block in blocks))
                tmp.replace(target)

                written[(code, family)] = len(blocks)
                logger.info("Wrote %s %s prefixes for %s to %s", len(blocks), family, code, target)

        return written

    def describe(self) -> str:
        return f"url {self.base_url}"


class StaticDatasetSource(DatasetSource):
    """In-memory dataset, keyed by country code and family."""

    def __init__(
        self,
        data: Optional[Dict[Tuple[str, AddressFamily], Iterable[str]]] = None,
        unavailable: Iterable[str] = (),
    ):
        self._data: Dict[Tuple[str, AddressFamily], List[CIDRBlock]] = {}
        self._unavailable = {str(CountryCode.parse(c)) for c in unavailable}
        for (country, family), cidrs in (data or {}).items():
            self.set(country, family, cidrs)

    def set(self, country: CountryLike, family: AddressFamily, cidrs: Iterable[str]) -> None:
        code = str(CountryCode.parse(country))
        self._data[(code, family)] = parse_cidr_lines(cidrs, family, source=f"static:{code}")

    def mark_unavailable(self, country: CountryLike) -> None:
        self._unavailable.add(str(CountryCode.parse(country)))

    def load(self, country: CountryLike, family: AddressFamily) -> List[CIDRBlock]:
        code = str(CountryCode.parse(country))
        if code in self._unavailable:
            raise DatasetUnavailable(code, family.value, "marked unavailable")
        return list(self._data.get((code, family), []))

    def describe(self) -> str:
        return f"static ({len(self._data)} lists)"
