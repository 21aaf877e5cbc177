from fieldrelay.core.models import Integration, WorkerMapping
from fieldrelay.core.resolver import resolve


def _integration(*workers: WorkerMapping) -> Integration:
    return Integration(
        integration_id="int-1",
        connect_id="c" * 32,
        name="Crew",
        platform="other",
        owner_chat_id="900",
        workers=list(workers),
    )


def test_mapped_worker_wins() -> None:
    integration = _integration(
        WorkerMapping(chat_id="111", external_id="u1"),
        WorkerMapping(chat_id="222", external_id="u2"),
    )
    assert resolve(integration, "u2") == "222"

def test_single_active_worker_when_unmapped() -> None:
    integration = _integration(WorkerMapping(chat_id="111", external_id="u1"))
    assert resolve(integration, "stranger") == "111"
    assert resolve(integration, None) == "111"

def test_owner_when_ambiguous() -> None:
    integration = _integration(
        WorkerMapping(chat_id="111", external_id="u1"),
        WorkerMapping(chat_id="222", external_id="u2"),
    )
    assert resolve(integration, "stranger") == "900"

def test_owner_when_no_workers() -> None:
    assert resolve(_integration(), "u1") == "900"

def test_inactive_mapping_ignored() -> None:
    integration = _integration(
        WorkerMapping(chat_id="111", external_id="u1", is_active=False),
        WorkerMapping(chat_id="222", external_id="u2"),
    )
    # u1 is deactivated, so the sole active worker receives the task
    assert resolve(integration, "u1") == "222"
