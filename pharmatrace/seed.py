import uuid
from sqlalchemy import select
from sqlalchemy.orm import Session
from pharmatrace.db.session import SessionLocal
from pharmatrace.models.enums import ParticipantRole
from pharmatrace.models.participant import Participant

# Demo supply chain: one participant per role, no wallets bound yet.
# Bind real wallets with PATCH /participants/{id} before minting.
DEMO_PARTICIPANTS = [
    ("Acme Pharma Manufacturing", ParticipantRole.MANUFACTURER),
    ("EuroMed Distribution", ParticipantRole.DISTRIBUTOR),
    ("Central Wholesale Pharma", ParticipantRole.WHOLESALER),
    ("City Pharmacy", ParticipantRole.PHARMACY),
    ("St. Mary Hospital", ParticipantRole.HOSPITAL),
    ("National Medicines Agency", ParticipantRole.REGULATOR),
]


def seed():
    db: Session = SessionLocal()

    for name, role in DEMO_PARTICIPANTS:
        exists = db.execute(
            select(Participant.id).where(Participant.name == name)
        ).first()
        if exists:
            continue

        db.add(Participant(
            id=uuid.uuid4(),
            name=name,
            role=role.value,
            is_active=True,
        ))
        db.commit()

    db.close()

if __name__ == "__main__":
    seed()
