# pharmatrace/services/chain_adapter.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from pharmatrace.core.config import Settings
from pharmatrace.core.errors import ChainAdapterError

logger = logging.getLogger(__name__)


MINT_VALIDATOR = "pharma_trace.pharma_trace.mint"
SPEND_VALIDATOR = "pharma_trace.pharma_trace.spend"

CUSTODY_OUTPUT_LOVELACE = "2000000"
ANCHOR_OUTPUT_LOVELACE = "1500000"


# ─────────────────────────────────────────────
# RESULT SHAPES
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class MintBuild:
    build_id: str
    unsigned_cbor: str
    tx_body_hash: str
    policy_id: str
    asset_name: str
    fingerprint: Optional[str]
    script_address: Optional[str]


@dataclass(frozen=True)
class TxBuild:
    build_id: str
    unsigned_cbor: str
    tx_body_hash: str


@dataclass(frozen=True)
class SigningRequest:
    signing_request_id: str
    unsigned_tx_cbor: str
    tx_body_hash: str


@dataclass(frozen=True)
class SubmitResult:
    tx_hash: str
    submission_id: str
    status: str


@dataclass(frozen=True)
class SubmissionCheck:
    status: str  # pending | submitted | confirmed | failed
    tx_hash: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class TxStatus:
    status: str  # confirmed | pending
    block: Optional[str] = None
    slot: Optional[int] = None


SUBMISSION_STATES = {"pending", "submitted", "confirmed", "failed"}


def _required(result: Dict[str, Any], key: str) -> str:
    value = result.get(key)
    if not value:
        raise ChainAdapterError(f"Transaction service response is missing '{key}'.")
    return str(value)


# ─────────────────────────────────────────────
# PLUTUS HELPERS
# ─────────────────────────────────────────────

def to_hex(value: str) -> str:
    return value.encode("utf-8").hex()


def build_chain_of_custody_datum(
    manufacturer_vkh: str,
    current_holder_vkh: str,
    batch_id_hex: str,
    step: int,
) -> str:
    """Inline datum locked with the NFT at the script address (detailed-schema JSON)."""
    return json.dumps({
        "constructor": 0,
        "fields": [
            {"bytes": manufacturer_vkh},
            {"bytes": current_holder_vkh},
            {"bytes": batch_id_hex},
            {"int": step},
        ],
    })


def build_transfer_redeemer(next_holder_vkh: str) -> str:
    return json.dumps({"constructor": 0, "fields": [{"bytes": next_holder_vkh}]})


@lru_cache(maxsize=8)
def _load_blueprint(path: str) -> Dict[str, str]:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ChainAdapterError(f"Cannot read Plutus blueprint {path}: {e}")
    return {v["title"]: v["compiledCode"] for v in raw.get("validators", [])}


# ─────────────────────────────────────────────
# ADAPTER
# ─────────────────────────────────────────────

class ChainAdapter:
    """
    Stateless façade over the external transaction-building service.

    Translates lifecycle intents (mint, transfer, anchor) into service calls and
    normalizes the responses. Owns no persisted state. Status queries report
    "not found yet" as a pending result; anything else that goes wrong is
    raised as ChainAdapterError.
    """

    def __init__(
        self,
        *,
        tx_service_url: str,
        query_service_url: str,
        blueprint_path: str,
        timeout_seconds: float = 30.0,
        api_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.tx_service_url = tx_service_url.rstrip("/")
        self.query_service_url = query_service_url.rstrip("/")
        self.blueprint_path = blueprint_path
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> "ChainAdapter":
        return cls(
            tx_service_url=settings.chain_tx_service_url,
            query_service_url=settings.chain_query_service_url,
            blueprint_path=settings.plutus_blueprint_path,
            timeout_seconds=settings.chain_request_timeout_seconds,
            api_key=settings.chain_api_key,
            transport=transport,
        )

    # ---------------------------
    # TRANSPORT
    # ---------------------------

    def _client(self, base_url: str) -> httpx.Client:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return httpx.Client(
            base_url=base_url,
            timeout=self.timeout_seconds,
            headers=headers,
            transport=self.transport,
        )

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:500]
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            return str(body["error"].get("message") or body["error"])
        return str(body)[:500]

    @staticmethod
    def _unwrap(body: Any) -> Dict[str, Any]:
        # OData action results may come wrapped in {"value": {...}}
        if isinstance(body, dict) and isinstance(body.get("value"), dict):
            return body["value"]
        if not isinstance(body, dict):
            raise ChainAdapterError("Unexpected response shape from transaction service.")
        return body

    def _json(self, response: httpx.Response, path: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise ChainAdapterError(f"{path} returned a non-JSON response.")
        return self._unwrap(body)

    def _send(self, base_url: str, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        try:
            with self._client(base_url) as client:
                return client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            logger.warning("chain service unreachable", extra={"path": path, "error": str(e)})
            raise ChainAdapterError(f"Transaction service unreachable: {e}")

    def _call(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self._send(self.tx_service_url, "POST", path, payload)
        if response.is_error:
            detail = self._error_detail(response)
            logger.warning(
                "chain service call failed",
                extra={"path": path, "status_code": response.status_code, "detail": detail},
            )
            raise ChainAdapterError(f"{path} failed ({response.status_code}): {detail}")
        return self._json(response, path)

    def _validator(self, title: str) -> str:
        validators = _load_blueprint(self.blueprint_path)
        if title not in validators:
            raise ChainAdapterError(f'Validator "{title}" not found in Plutus blueprint.')
        return validators[title]

    # ---------------------------
    # BUILDS
    # ---------------------------

    def build_mint(self, *, sender_address: str, manufacturer_vkh: str, batch_number: str) -> MintBuild:
        """
        Mint the batch NFT and lock it at the script address with the initial
        custody datum (holder = manufacturer, step 0).
        """
        batch_id_hex = to_hex(batch_number)
        datum = build_chain_of_custody_datum(manufacturer_vkh, manufacturer_vkh, batch_id_hex, 0)

        build = self._call("/BuildMintTransaction", {
            "senderAddress": sender_address,
            "recipientAddress": sender_address,
            "lovelaceAmount": CUSTODY_OUTPUT_LOVELACE,
            "mintActionsJson": json.dumps([{"assetUnit": batch_id_hex, "quantity": "1"}]),
            "mintingPolicyScript": self._validator(MINT_VALIDATOR),
            "scriptParamsJson": json.dumps([{"bytes": manufacturer_vkh}]),
            "changeAddress": sender_address,
            "requiredSignersJson": json.dumps([manufacturer_vkh]),
            "inlineDatumJson": datum,
            "lockOnScript": True,
        })

        return MintBuild(
            build_id=_required(build, "id"),
            unsigned_cbor=build.get("unsignedTxCbor", ""),
            tx_body_hash=build.get("txBodyHash", ""),
            policy_id=build.get("scriptHash", ""),
            asset_name=batch_id_hex,
            fingerprint=build.get("fingerprint") or None,
            script_address=build.get("scriptAddress"),
        )

    def build_transfer(
        self,
        *,
        sender_address: str,
        manufacturer_vkh: str,
        current_holder_vkh: str,
        next_holder_vkh: str,
        batch_number: str,
        current_step: int,
        script_tx_hash: str,
        script_output_index: int,
    ) -> TxBuild:
        """
        Spend the script UTxO and re-lock the NFT with the next holder and
        step + 1 in the continuing datum. The spent UTxO carries an inline
        datum, so none is sent for the input side.
        """
        output_datum = build_chain_of_custody_datum(
            manufacturer_vkh, next_holder_vkh, to_hex(batch_number), current_step + 1
        )

        build = self._call("/BuildPlutusSpendTransaction", {
            "senderAddress": sender_address,
            "recipientAddress": sender_address,
            "lovelaceAmount": CUSTODY_OUTPUT_LOVELACE,
            "validatorScript": self._validator(SPEND_VALIDATOR),
            "scriptParamsJson": json.dumps([{"bytes": manufacturer_vkh}]),
            "scriptTxHash": script_tx_hash,
            "scriptOutputIndex": script_output_index,
            "redeemerJson": build_transfer_redeemer(next_holder_vkh),
            "inlineDatumJson": output_datum,
            "changeAddress": sender_address,
            "requiredSignersJson": json.dumps([current_holder_vkh]),
            "lockOnScript": True,
        })
        return TxBuild(
            build_id=_required(build, "id"),
            unsigned_cbor=build.get("unsignedTxCbor", ""),
            tx_body_hash=build.get("txBodyHash", ""),
        )

    def build_anchor(self, *, sender_address: str, metadata: Dict[str, Any]) -> TxBuild:
        """Metadata-only transaction (no custody change on-chain)."""
        build = self._call("/BuildTransactionWithMetadata", {
            "senderAddress": sender_address,
            "recipientAddress": sender_address,
            "lovelaceAmount": ANCHOR_OUTPUT_LOVELACE,
            "metadataJson": json.dumps(metadata),
            "changeAddress": sender_address,
        })
        return TxBuild(
            build_id=_required(build, "id"),
            unsigned_cbor=build.get("unsignedTxCbor", ""),
            tx_body_hash=build.get("txBodyHash", ""),
        )

    # ---------------------------
    # SIGN / SUBMIT
    # ---------------------------

    def create_signing_request(self, build_id: str) -> SigningRequest:
        result = self._call("/CreateSigningRequest", {"buildId": build_id})
        return SigningRequest(
            signing_request_id=_required(result, "id"),
            unsigned_tx_cbor=result.get("unsignedTxCbor", ""),
            tx_body_hash=result.get("txBodyHash", ""),
        )

    def submit_signed(self, signing_request_id: str, witness_cbor: str) -> SubmitResult:
        """
        Hand the wallet witness set to the service, which rebuilds the
        transaction, compares the body hash and submits it.
        """
        result = self._call(
            f"/SigningRequests({quote(signing_request_id, safe='')})/SubmitVerifiedTransaction",
            {"signedTxCbor": witness_cbor},
        )
        return SubmitResult(
            tx_hash=result.get("txHash", ""),
            submission_id=result.get("id", ""),
            status=result.get("status", "submitted"),
        )

    # ---------------------------
    # STATUS QUERIES (never raise on "not found yet")
    # ---------------------------

    def check_submission_status(self, submission_id: str) -> SubmissionCheck:
        path = f"/TransactionSubmissions({quote(submission_id, safe='')})/CheckSubmissionStatus"
        response = self._send(self.tx_service_url, "POST", path, {})
        if response.status_code == 404:
            return SubmissionCheck(status="pending")
        if response.is_error:
            raise ChainAdapterError(
                f"CheckSubmissionStatus failed ({response.status_code}): {self._error_detail(response)}"
            )

        result = self._json(response, path)
        status = str(result.get("status") or "submitted").lower()
        if status not in SUBMISSION_STATES:
            status = "submitted"
        return SubmissionCheck(
            status=status,
            tx_hash=result.get("txHash"),
            error_message=result.get("errorMessage"),
        )

    def get_tx_status(self, tx_hash: str) -> TxStatus:
        path = f"/GetTransactionByHash(hash='{quote(tx_hash, safe='')}')"
        response = self._send(self.query_service_url, "GET", path)
        if response.status_code == 404:
            return TxStatus(status="pending")
        if response.is_error:
            raise ChainAdapterError(
                f"GetTransactionByHash failed ({response.status_code}): {self._error_detail(response)}"
            )

        result = self._json(response, path) if response.content else {}
        return TxStatus(status="confirmed", block=result.get("blockHash"), slot=result.get("slot"))
