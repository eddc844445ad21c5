"""Tests for the KMS grant retention selector and the pruning task."""

from __future__ import annotations

import itertools

import pytest

from aws_tasks import kms_grants
from aws_tasks.common import format_local_time
from aws_tasks.kms_grants import (
    DRY_RUN,
    FAILED,
    REVOKED,
    GrantRecord,
    decode_grants,
    prune_key_grants,
    render_plan,
    revoke_grants,
    select_retention,
)
from core.errors import ConsistencyError, MissingPrincipalError
from fakes import FakeKms, client_error, kms_grant

KEY = "arn:aws:kms:eu-west-1:111111111111:key/k1"
FN_A = "arn:aws:lambda:eu-west-1:111111111111:function:a"
FN_B = "arn:aws:lambda:eu-west-1:111111111111:function:b"


def rec(created_at: int, grant_id: str, principal: str) -> GrantRecord:
    return GrantRecord(created_at=created_at, grant_id=grant_id, principal_arn=principal)


def _ids(records):
    return [r.grant_id for r in records]


# ---------------------------- select_retention ----------------------------- #

def test_two_principals_keep_latest_each():
    plan = select_retention([rec(100, "g1", "arnA"), rec(200, "g2", "arnA"), rec(150, "g3", "arnB")])
    assert list(plan) == ["arnA", "arnB"]
    assert plan["arnA"].keep.grant_id == "g2"
    assert _ids(plan["arnA"].revoke) == ["g1"]
    assert plan["arnB"].keep.grant_id == "g3"
    assert plan["arnB"].revoke == ()
    assert plan.anomalies == ()


def test_keep_does_not_depend_on_input_order():
    records = [rec(50, "a", "arnA"), rec(150, "b", "arnA"), rec(100, "c", "arnA")]
    for perm in itertools.permutations(records):
        plan = select_retention(perm)
        assert plan["arnA"].keep.created_at == 150
        assert sorted(r.created_at for r in plan["arnA"].revoke) == [50, 100]


def test_keep_plus_revoke_is_a_partition_of_the_input():
    records = [rec(t, f"g{t}", "arnA") for t in (5, 1, 9, 3, 7)]
    decision = select_retention(records)["arnA"]
    kept_and_revoked = [decision.keep, *decision.revoke]
    assert sorted(kept_and_revoked, key=lambda r: r.grant_id) == sorted(records, key=lambda r: r.grant_id)
    assert decision.keep not in decision.revoke
    assert decision.keep.created_at == 9


def test_rerun_on_kept_records_revokes_nothing():
    records = [rec(1, "a", "x"), rec(2, "b", "x"), rec(3, "c", "y"), rec(1, "d", "y")]
    plan = select_retention(records)
    again = select_retention([d.keep for d in plan.values()])
    for principal, decision in again.items():
        assert decision.keep == plan[principal].keep
        assert decision.revoke == ()


def test_single_grant_principal_has_nothing_to_revoke():
    plan = select_retention([rec(42, "only", "arnA")])
    assert plan["arnA"].keep.grant_id == "only"
    assert plan["arnA"].revoke == ()


def test_empty_input_gives_empty_plan():
    plan = select_retention([])
    assert len(plan) == 0
    assert plan.revocations() == []


def test_grant_without_principal_is_an_anomaly_not_a_group():
    records = [rec(100, "g1", "arnA"), rec(200, "bad", ""), rec(300, "g2", "arnA")]
    plan = select_retention(records)
    assert "" not in plan
    assert list(plan) == ["arnA"]
    assert _ids(plan.anomalies) == ["bad"]
    assert "bad" not in _ids(plan.revocations())


def test_none_principal_is_an_anomaly():
    records = [rec(100, "g1", "arnA"), rec(200, "none", None), rec(300, "g2", "arnA")]
    plan = select_retention(records)
    assert list(plan) == ["arnA"]
    assert _ids(plan.anomalies) == ["none"]
    assert _ids(plan.revocations()) == ["g1"]


def test_strict_mode_raises_on_missing_principal():
    bad = rec(200, "bad", "  ")
    with pytest.raises(MissingPrincipalError) as info:
        select_retention([rec(100, "g1", "arnA"), bad], strict=True)
    assert info.value.records == (bad,)


def test_equal_timestamps_keep_greatest_grant_id():
    for perm in itertools.permutations([rec(100, "g1", "A"), rec(100, "g3", "A"), rec(100, "g2", "A")]):
        decision = select_retention(perm)["A"]
        assert decision.keep.grant_id == "g3"
        assert sorted(_ids(decision.revoke)) == ["g1", "g2"]


def test_revoke_list_ascending_with_ties_in_input_order():
    records = [rec(300, "g9", "A"), rec(100, "gb", "A"), rec(100, "ga", "A"), rec(50, "gx", "A")]
    assert _ids(select_retention(records)["A"].revoke) == ["gx", "gb", "ga"]


def test_duplicate_grant_ids_are_rejected():
    with pytest.raises(ConsistencyError) as info:
        select_retention([rec(1, "dup", "A"), rec(2, "dup", "B")])
    assert info.value.grant_id == "dup"


def test_record_newer_than_tracked_latest_aborts(monkeypatch):
    older, newer = rec(100, "g1", "A"), rec(200, "g2", "A")
    monkeypatch.setattr(kms_grants, "_latest_by_principal", lambda records: {"A": older})
    with pytest.raises(ConsistencyError) as info:
        select_retention([older, newer])
    assert info.value.grant_id == "g2"
    assert info.value.principal_arn == "A"


# ------------------------------- decoding ---------------------------------- #

def test_decode_reads_context_key_and_epoch():
    grants = [kms_grant("g1", 1_700_000_000, FN_A), kms_grant("g2", 1_700_000_100, None)]
    records = decode_grants(grants)
    assert records == [
        GrantRecord(1_700_000_000, "g1", FN_A),
        GrantRecord(1_700_000_100, "g2", ""),
    ]


def test_decode_with_custom_context_key():
    grant = kms_grant("g1", 10, "svc-principal", context_key="aws:ecs:service")
    assert GrantRecord.from_grant(grant, "aws:ecs:service").principal_arn == "svc-principal"
    assert GrantRecord.from_grant(grant).principal_arn == ""


def test_decode_failure_is_a_consistency_error():
    broken = kms_grant("g1", 10, FN_A)
    del broken["CreationDate"]
    with pytest.raises(ConsistencyError):
        decode_grants([broken])
    with pytest.raises(ConsistencyError):
        decode_grants([{"CreationDate": 10}])


def test_render_plan_lines(echoed):
    plan = select_retention([rec(100, "g1", FN_A), rec(200, "g2", FN_A), rec(300, "odd", "")])
    lines = render_plan(plan)
    assert lines[0] == f"Principal: {FN_A}"
    assert lines[1] == f"\tKeeping:\t{format_local_time(200)}"
    assert lines[2] == f"\tDeleting:\t{format_local_time(100)} (Grant ID: g1)"
    assert any("(Grant ID: odd)" in line for line in lines[3:])


# ------------------------------- mutation ---------------------------------- #

def _listing():
    return [
        kms_grant("a-old", 100, FN_A),
        kms_grant("a-new", 300, FN_A),
        kms_grant("a-mid", 200, FN_A),
        kms_grant("b-only", 150, FN_B),
        kms_grant("b-old", 50, FN_B),
    ]


def test_prune_is_dry_run_by_default(echoed):
    kms = FakeKms(_listing())
    result = prune_key_grants(kms, KEY)
    assert kms.revoke_calls == []
    assert kms.paginator.calls == [{"KeyId": KEY}]
    assert [(o.grant_id, o.status) for o in result.outcomes] == [
        ("a-old", DRY_RUN),
        ("a-mid", DRY_RUN),
        ("b-old", DRY_RUN),
    ]
    assert result.failed == []
    assert f"Principal: {FN_A}" in echoed


def test_prune_execute_revokes_only_stale_grants(echoed):
    kms = FakeKms(_listing())
    result = prune_key_grants(kms, KEY, execute=True, base_delay=0)
    assert sorted(kms.revoke_calls) == ["a-mid", "a-old", "b-old"]
    assert all(o.status == REVOKED for o in result.outcomes)
    assert result.plan[FN_A].keep.grant_id == "a-new"


def test_revocation_failure_does_not_stop_siblings(echoed):
    kms = FakeKms(_listing())
    kms.revoke_errors["a-mid"] = [client_error("AccessDeniedException", "RevokeGrant")]
    result = prune_key_grants(kms, KEY, execute=True, base_delay=0)
    assert kms.revoke_calls.count("a-mid") == 1
    statuses = {o.grant_id: o.status for o in result.outcomes}
    assert statuses == {"a-old": REVOKED, "a-mid": FAILED, "b-old": REVOKED}
    assert [o.grant_id for o in result.failed] == ["a-mid"]
    assert "AccessDeniedException" in result.failed[0].error


def test_not_found_is_not_retried(echoed):
    kms = FakeKms(_listing())
    kms.revoke_errors["b-old"] = [client_error("NotFoundException", "RevokeGrant")]
    result = prune_key_grants(kms, KEY, execute=True, base_delay=0)
    assert kms.revoke_calls.count("b-old") == 1
    assert [o.grant_id for o in result.failed] == ["b-old"]


def test_throttled_revocation_is_retried(no_sleep):
    kms = FakeKms([])
    kms.revoke_errors["g1"] = [client_error("ThrottlingException", "RevokeGrant")]
    outcomes = revoke_grants(kms, KEY, [rec(1, "g1", "A")], execute=True, base_delay=0)
    assert kms.revoke_calls == ["g1", "g1"]
    assert outcomes[0].status == REVOKED


def test_transient_errors_exhaust_bounded_retries(no_sleep):
    kms = FakeKms([])
    kms.revoke_errors["g1"] = [client_error("InternalError", "RevokeGrant", 500) for _ in range(10)]
    outcomes = revoke_grants(kms, KEY, [rec(1, "g1", "A")], execute=True, tries=3, base_delay=0)
    assert kms.revoke_calls == ["g1"] * 3
    assert outcomes[0].status == FAILED


def test_parallel_revocation_keeps_candidate_order():
    kms = FakeKms([])
    candidates = [rec(i, f"g{i}", "A") for i in range(20)]
    outcomes = revoke_grants(kms, KEY, candidates, execute=True, max_workers=4, base_delay=0)
    assert [o.grant_id for o in outcomes] == [c.grant_id for c in candidates]
    assert sorted(kms.revoke_calls) == sorted(c.grant_id for c in candidates)


def test_inconsistent_listing_revokes_nothing(echoed):
    listing = _listing() + [kms_grant("a-old", 400, FN_B)]
    kms = FakeKms(listing)
    with pytest.raises(ConsistencyError):
        prune_key_grants(kms, KEY, execute=True)
    assert kms.revoke_calls == []


def test_strict_prune_revokes_nothing(echoed):
    kms = FakeKms(_listing() + [kms_grant("orphan", 10, None)])
    with pytest.raises(MissingPrincipalError):
        prune_key_grants(kms, KEY, execute=True, strict=True)
    assert kms.revoke_calls == []


def test_anomalies_are_left_alone(echoed):
    kms = FakeKms(_listing() + [kms_grant("orphan", 10, None)])
    result = prune_key_grants(kms, KEY, execute=True, base_delay=0)
    assert "orphan" not in kms.revoke_calls
    assert _ids(result.plan.anomalies) == ["orphan"]


def test_empty_key_is_rejected():
    with pytest.raises(ValueError):
        prune_key_grants(FakeKms([]), "")
