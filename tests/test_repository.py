from __future__ import annotations

import pytest

from companion_voice.repository import TrialRepository

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def repository(tmp_path):
    repo = TrialRepository(tmp_path / "nested" / "trial.db")
    await repo.initialize()
    yield repo
    await repo.close()


async def test_unknown_user_has_no_record(repository: TrialRepository) -> None:
    assert await repository.get_trial("nobody") is None


async def test_upsert_bumps_version(repository: TrialRepository) -> None:
    first = await repository.upsert_user("u1", remaining_minutes=10, coupon_code="TRIAL")
    second = await repository.upsert_user("u1", remaining_minutes=8, coupon_code="TRIAL")

    assert first.version == 1
    assert second.version == 2
    assert second.remaining_minutes == 8
    assert second.active_coupon_code == "TRIAL"
    assert second.has_budget


async def test_user_without_trial_has_no_budget(repository: TrialRepository) -> None:
    record = await repository.upsert_user("u1")

    assert record.remaining_minutes is None
    assert not record.has_budget


async def test_compare_and_set_requires_matching_version(repository: TrialRepository) -> None:
    record = await repository.upsert_user("u1", remaining_minutes=10)

    new_version = await repository.compare_and_set_remaining(
        "u1", 9.5, expected_version=record.version
    )
    stale = await repository.compare_and_set_remaining(
        "u1", 1.0, expected_version=record.version
    )

    assert new_version == record.version + 1
    assert stale is None
    stored = await repository.get_trial("u1")
    assert stored.remaining_minutes == 9.5
    assert stored.version == new_version


async def test_compare_and_set_never_stores_negative(repository: TrialRepository) -> None:
    record = await repository.upsert_user("u1", remaining_minutes=1)

    await repository.compare_and_set_remaining("u1", -3.0, expected_version=record.version)

    assert (await repository.get_trial("u1")).remaining_minutes == 0.0


async def test_add_trial_minutes_extends_or_restarts(repository: TrialRepository) -> None:
    await repository.upsert_user("u1", remaining_minutes=2)
    extended = await repository.add_trial_minutes("u1", 5)
    assert extended.remaining_minutes == 7

    await repository.upsert_user("u2", remaining_minutes=0)
    restarted = await repository.add_trial_minutes("u2", 5)
    assert restarted.remaining_minutes == 5

    created = await repository.add_trial_minutes("u3", 1.5)
    assert created.remaining_minutes == 1.5
    assert created.version == 1

    with pytest.raises(ValueError):
        await repository.add_trial_minutes("u1", 0)


async def test_clear_entitlement_only_once(repository: TrialRepository) -> None:
    record = await repository.upsert_user("u1", remaining_minutes=0, coupon_code="TRIAL")

    assert await repository.clear_entitlement("u1") is True
    assert await repository.clear_entitlement("u1") is False

    stored = await repository.get_trial("u1")
    assert stored.active_coupon_code is None
    assert stored.version == record.version
