from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select

from adlex_app.core.extractor import ExtractedViolation
from adlex_app.storage.models import Organization
from adlex_app.storage.repo import CheckRepo, PersistenceError, UserRepo

TEXT = "このサプリメントで驚異的な効果を実感できます。"


@pytest.fixture
def repo(seeded):
    return CheckRepo(seeded)


def _new(repo):
    return repo.create(user_id="user-1", organization_id=1, original_text=TEXT)


def test_create_and_find(repo):
    rec = _new(repo)
    assert rec.status == "pending"
    found = repo.find(rec.id)
    assert found.original_text == TEXT
    assert found.completed_at is None
    assert repo.find(9999) is None


def test_claim_is_exclusive_across_threads(repo):
    rec = _new(repo)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: repo.claim(rec.id), range(8)))
    assert results.count(True) == 1
    assert repo.find(rec.id).status == "processing"


def test_complete_is_atomic_and_counts_usage(repo, seeded):
    rec = _new(repo)
    assert repo.claim(rec.id)
    done = repo.complete(rec.id, "健康的な毎日", [ExtractedViolation(9, 15, "誇大", None)])
    assert done.status == "completed"
    assert done.completed_at is not None
    assert [(v.start_pos, v.end_pos) for v in done.violations] == [(9, 15)]
    with seeded() as s:
        org = s.execute(select(Organization).where(Organization.id == 1)).scalar_one()
        assert org.used_checks == 1


def test_complete_requires_processing_and_rolls_back(repo):
    rec = _new(repo)
    with pytest.raises(PersistenceError):
        repo.complete(rec.id, "x", [ExtractedViolation(0, 1, "r")])
    assert repo.list_violations(rec.id) == []
    assert repo.find(rec.id).status == "pending"


def test_fail_never_rewrites_terminal_rows(repo):
    rec = _new(repo)
    repo.claim(rec.id)
    repo.complete(rec.id, "ok", [])
    assert repo.fail(rec.id, "late failure") is False
    after = repo.find(rec.id)
    assert after.status == "completed"
    assert after.error_message is None


def test_fail_sets_message_and_completed_at(repo):
    rec = _new(repo)
    assert repo.fail(rec.id, "キュー追加に失敗しました")
    after = repo.find(rec.id)
    assert after.status == "failed"
    assert after.error_message == "キュー追加に失敗しました"
    assert after.completed_at is not None


def test_soft_delete_hides_check_and_blocks_claim(repo):
    rec = _new(repo)
    assert repo.soft_delete(rec.id)
    assert repo.find(rec.id) is None
    assert repo.find(rec.id, include_deleted=True).deleted_at is not None
    assert repo.claim(rec.id) is False


def test_user_repo(seeded):
    users = UserRepo(seeded)
    assert users.find("admin-1").role == "admin"
    assert users.find("nobody") is None
