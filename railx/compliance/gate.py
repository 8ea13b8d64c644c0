"""
Compliance Gate.

Three stages, in order, each pass/fail:
1. KYC              - subject name against the risk-entity list (skipped
                      when no name is supplied)
2. KYT              - subject address against the risk-address list
3. SOURCE_OF_FUNDS  - provenance placeholder, always passes

Any failure raises ComplianceError and aborts the whole scan. A passed scan
returns the audit log that travels inside the encrypted packet.
"""

import re
import json
import logging
from typing import Optional, Dict, List, Any, Callable

import httpx

from ..core import AuditLogEntry, ComplianceStage, normalize_address, utc_now_iso
from ..errors import RailXError, ComplianceError

log = logging.getLogger(__name__)

PASS = "PASS"

KYC_DETAILS = "Verified Entity Identity"
KYT_DETAILS = "TranSight Clean Asset (Score: 0)"
SOF_DETAILS = "Hop Analysis Complete"

# Reason codes
ENTITY_MATCH = "ENTITY_MATCH"
ADDRESS_MATCH = "ADDRESS_MATCH"
SCAN_FAILED = "SCAN_FAILED"

_NAME_STRIP = re.compile(r"[\s,]")


def normalize_name(name: str) -> str:
    """Lower-case and drop whitespace and commas ("Kim, Jong Un" -> "kimjongun")."""
    return _NAME_STRIP.sub("", name.lower())


class ScreeningError(RailXError):
    """The risk source could not answer."""


# =============================================================================
# Risk sources
# =============================================================================

class RiskRegistry:
    """
    Local risk lists.

    File format:
        {"entities": [{"name", "risk_category", "risk_level"}, ...],
         "addresses": [{"address", "risk_category"}, ...]}
    """

    def __init__(self):
        self._entities: List[Dict[str, Any]] = []
        self._addresses: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def from_file(cls, path: str) -> "RiskRegistry":
        with open(path, "r") as f:
            data = json.load(f)
        registry = cls()
        for entity in data.get("entities", []):
            registry.add_entity(
                entity["name"],
                entity.get("risk_category", "SANCTIONS"),
                entity.get("risk_level", "HIGH"),
            )
        for entry in data.get("addresses", []):
            registry.add_address(entry["address"], entry.get("risk_category", "UNKNOWN"))
        log.info(f"Loaded {len(registry._entities)} risk entities, "
                 f"{len(registry._addresses)} risk addresses from {path}")
        return registry

    def add_entity(self, name: str, risk_category: str, risk_level: str = "HIGH"):
        self._entities.append({
            "name": name,
            "normalized_name": normalize_name(name),
            "risk_category": risk_category,
            "risk_level": risk_level,
        })

    def add_address(self, address: str, risk_category: str):
        self._addresses[normalize_address(address)] = {
            "address": normalize_address(address),
            "risk_category": risk_category,
        }

    def match_entity(self, normalized: str) -> Optional[Dict[str, Any]]:
        """First entity whose normalized name contains the input."""
        for entity in self._entities:
            if normalized in entity["normalized_name"]:
                return entity
        return None

    def match_address(self, address: str) -> Optional[Dict[str, Any]]:
        return self._addresses.get(address)


class ScreeningClient:
    """
    Remote screening service.

    GET {base_url}/entities?normalized_name=<n>  -> {"match": {...} | null}
    GET {base_url}/addresses/<address>           -> {"match": {...} | null}
    """

    def __init__(self, base_url: str, client: httpx.Client = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.timeout)
        return self._client

    def _get(self, path: str, params: Dict[str, str] = None) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.get(f"{self.base_url}{path}", params=params)
            response.raise_for_status()
            return response.json().get("match")
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            raise ScreeningError(f"Screening request failed: {e}") from e

    def match_entity(self, normalized: str) -> Optional[Dict[str, Any]]:
        return self._get("/entities", {"normalized_name": normalized})

    def match_address(self, address: str) -> Optional[Dict[str, Any]]:
        return self._get(f"/addresses/{address}")


# =============================================================================
# Gate
# =============================================================================

class ComplianceGate:
    """Blocking three-stage scan over a risk source."""

    def __init__(self, source, clock: Callable[[], str] = utc_now_iso):
        self.source = source
        self.clock = clock

    def _entry(self, stage: ComplianceStage, details: str) -> AuditLogEntry:
        return AuditLogEntry(step=stage.value, status=PASS, timestamp=self.clock(), details=details)

    def run_compliance_scan(self, subject_address: str,
                            subject_name: Optional[str] = None) -> List[AuditLogEntry]:
        """
        Screen a counterparty.

        Args:
            subject_address: Wallet address to screen
            subject_name: Legal/entity name (KYC is skipped when absent)

        Returns:
            Audit log, one entry per passed stage

        Raises:
            ComplianceError: any stage matched or could not run
        """
        address = normalize_address(subject_address)
        logs = []

        # Stage 1: KYC
        normalized = normalize_name(subject_name) if subject_name else ""
        if normalized:
            match = self._lookup(ComplianceStage.KYC, self.source.match_entity, normalized)
            if match:
                log.warning(f"KYC blocked subject {address[:10]}...")
                raise ComplianceError(
                    ComplianceStage.KYC.value, ENTITY_MATCH, match.get("risk_category")
                )
        logs.append(self._entry(ComplianceStage.KYC, KYC_DETAILS))

        # Stage 2: KYT
        match = self._lookup(ComplianceStage.KYT, self.source.match_address, address)
        if match:
            log.warning(f"KYT blocked subject {address[:10]}...")
            raise ComplianceError(
                ComplianceStage.KYT.value, ADDRESS_MATCH, match.get("risk_category")
            )
        logs.append(self._entry(ComplianceStage.KYT, KYT_DETAILS))

        # Stage 3: source of funds
        logs.append(self._entry(ComplianceStage.SOURCE_OF_FUNDS, SOF_DETAILS))

        log.info(f"Compliance scan passed for {address[:10]}...")
        return logs

    @staticmethod
    def _lookup(stage: ComplianceStage, fn, value: str):
        try:
            return fn(value)
        except ScreeningError as e:
            log.error(f"{stage.value} screening unavailable: {e}")
            raise ComplianceError(stage.value, SCAN_FAILED) from e
