import pharmatrace.seed as seed_module
from pharmatrace.models.participant import Participant


def test_seed_is_idempotent(db, session_factory, monkeypatch):
    monkeypatch.setattr(seed_module, "SessionLocal", session_factory)

    seed_module.seed()
    seed_module.seed()

    rows = db.query(Participant).all()
    assert len(rows) == len(seed_module.DEMO_PARTICIPANTS)
    assert {r.role for r in rows} == {role.value for _, role in seed_module.DEMO_PARTICIPANTS}
