from __future__ import annotations
from enum import Enum


class ParticipantRole(str, Enum):
    MANUFACTURER = "MANUFACTURER"
    DISTRIBUTOR = "DISTRIBUTOR"
    WHOLESALER = "WHOLESALER"
    PHARMACY = "PHARMACY"
    HOSPITAL = "HOSPITAL"
    REGULATOR = "REGULATOR"


class BatchStatus(str, Enum):
    DRAFT = "DRAFT"
    MINTED = "MINTED"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    RECALLED = "RECALLED"


class ProofEventType(str, Enum):
    MINT = "MINT"
    TRANSFER = "TRANSFER"
    DOCUMENT_ANCHOR = "DOCUMENT_ANCHOR"
    RECALL = "RECALL"


class SubmissionStatus(str, Enum):
    # shared by proof events and document anchors
    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class DocumentVisibility(str, Enum):
    PUBLIC = "PUBLIC"
    RESTRICTED = "RESTRICTED"
    PRIVATE = "PRIVATE"
