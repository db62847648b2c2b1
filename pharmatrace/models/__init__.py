from pharmatrace.models.participant import Participant
from pharmatrace.models.batch import Batch
from pharmatrace.models.onchain_asset import OnChainAsset
from pharmatrace.models.proof_event import ProofEvent
from pharmatrace.models.document_anchor import DocumentAnchor

__all__ = [
    "Participant",
    "Batch",
    "OnChainAsset",
    "ProofEvent",
    "DocumentAnchor",
]
