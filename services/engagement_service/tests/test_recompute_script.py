import importlib.util
import os

import crud
from conftest import BUYER, OTHER_BUYER, PROVIDER
from domain import Rating
from ratings import Reputation

SCRIPT = os.path.join(os.path.dirname(__file__), "..", "..", "..", "scripts", "recompute_reputations.py")


def load_script():
    spec = importlib.util.spec_from_file_location("recompute_reputations", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_recompute_fixes_drifted_reputation(db, clock):
    for rater, score in ((BUYER, 2), (OTHER_BUYER, 5)):
        crud.append_rating(db, Rating(
            provider_id=PROVIDER.party_id, rater_id=rater.party_id, score=score,
            created_at=clock.now, updated_at=clock.now,
        ))
    crud.save_reputation(db, PROVIDER.party_id, Reputation(score=5.0, review_count=9))

    script = load_script()

    changes = script.recompute(db, dry_run=True)
    assert changes[PROVIDER.party_id][1] == Reputation(score=3.5, review_count=2)
    assert crud.get_reputation(db, PROVIDER.party_id).review_count == 9

    script.recompute(db)
    assert crud.get_reputation(db, PROVIDER.party_id) == Reputation(score=3.5, review_count=2)
