"""Tests for strategy eligibility conditions."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from quota_manager.core.errors import EvaluationError
from quota_manager.features.conditions.evaluator import (
    Call,
    SUPPORTED_FUNCTIONS,
    evaluate_condition,
    parse_condition,
    validate_condition,
)
from quota_manager.models.user import UserInfo

SHANGHAI = ZoneInfo("Asia/Shanghai")


def make_user(**attrs):
    attrs.setdefault("user_id", "user-1")
    return UserInfo(**attrs)


def test_true_is_always_eligible():
    assert evaluate_condition("true()", make_user()) is True


def test_has_inviter_requires_non_empty_inviter():
    assert evaluate_condition("has-inviter()", make_user(inviter_id="inviter-1")) is True
    assert evaluate_condition("has-inviter()", make_user(inviter_id="")) is False
    assert evaluate_condition("has-inviter()", make_user(inviter_id="   ")) is False
    assert evaluate_condition("has-inviter()", make_user()) is False


def test_github_star_reads_prefetched_attribute():
    user = make_user(github_stars="zgsm-ai.zgsm, other.repo")
    assert evaluate_condition('github-star("zgsm-ai.zgsm")', user) is True
    assert evaluate_condition("github-star('other.repo')", user) is True
    assert evaluate_condition('github-star("missing.repo")', user) is False


def test_and_combines_any_number_of_predicates():
    starred = make_user(inviter_id="inviter-1", github_stars=("zgsm-ai.zgsm",))
    not_starred = make_user(inviter_id="inviter-1")
    expr = 'and(has-inviter(), github-star("zgsm-ai.zgsm"))'

    assert evaluate_condition(expr, starred) is True
    assert evaluate_condition(expr, not_starred) is False
    assert evaluate_condition("and(true(), true(), true(), has-inviter())", starred) is True


def test_empty_combinators():
    assert evaluate_condition("and()", make_user()) is True
    assert evaluate_condition("or()", make_user()) is False


def test_or_and_not():
    user = make_user(company="acme")
    assert evaluate_condition('or(has-inviter(), belong-to("acme"))', user) is True
    assert evaluate_condition("not(has-inviter())", user) is True
    assert evaluate_condition('not(or(false(), match-user("user-1")))', user) is False


def test_is_vip_compares_level():
    assert evaluate_condition("is-vip(2)", make_user(vip=3)) is True
    assert evaluate_condition("is-vip(2)", make_user(vip=1)) is False


def test_register_before_and_access_after_use_local_time():
    # 2024-01-01 00:30 in Shanghai is 2023-12-31 16:30 UTC
    user = make_user(
        registered_at=datetime(2023, 12, 31, 16, 30, tzinfo=timezone.utc),
        last_accessed_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
    )
    assert evaluate_condition('register-before("2024-01-01 01:00:00")', user, tz=SHANGHAI) is True
    assert evaluate_condition('register-before("2024-01-01 00:00:00")', user, tz=SHANGHAI) is False
    assert evaluate_condition('access-after("2024-05-01")', user, tz=SHANGHAI) is True
    assert evaluate_condition('access-after("2024-05-01")', make_user(), tz=SHANGHAI) is False


def test_timestamps_default_to_configured_zone():
    # cutoff is 2023-12-31 16:00 UTC in Shanghai, midnight in UTC
    user = make_user(registered_at=datetime(2023, 12, 31, 16, 30, tzinfo=timezone.utc))
    assert evaluate_condition('register-before("2024-01-01 00:00:00")', user) is False
    assert evaluate_condition('register-before("2024-01-01 00:00:00")', user, tz=timezone.utc) is True


def test_parse_builds_nested_call_tree():
    call = parse_condition('and(has-inviter(), github-star("a\\"b"), is-vip(1.5))')
    assert call == Call("and", (Call("has-inviter"), Call("github-star", ('a"b',)), Call("is-vip", (1.5,))))
    assert str(call) == 'and(has-inviter(), github-star("a\\"b"), is-vip(1.5))'


def test_unknown_function_is_an_error_not_false():
    with pytest.raises(EvaluationError, match="Unknown function"):
        evaluate_condition("is-admin()", make_user())


def test_unknown_function_in_short_circuited_branch_still_fails():
    with pytest.raises(EvaluationError):
        evaluate_condition("and(false(), bogus())", make_user())
    with pytest.raises(EvaluationError):
        evaluate_condition("or(true(), bogus())", make_user())


@pytest.mark.parametrize(
    "expr",
    [
        "has-inviter(1)",
        "github-star()",
        'github-star("a", "b")',
        "not()",
        "not(true(), true())",
    ],
)
def test_arity_mismatch_is_an_error(expr):
    with pytest.raises(EvaluationError, match="argument"):
        validate_condition(expr)


@pytest.mark.parametrize(
    "expr",
    [
        "github-star(123)",
        'is-vip("gold")',
        'and("x")',
        "github-star(true())",
        'register-before("yesterday")',
    ],
)
def test_wrong_argument_type_is_an_error(expr):
    with pytest.raises(EvaluationError):
        validate_condition(expr)


@pytest.mark.parametrize(
    "expr",
    ["", "   ", "true", "true(", "true())", "and(true(),)", 'github-star("unterminated)', "true() true()", "$()"],
)
def test_malformed_expression_is_an_error(expr):
    with pytest.raises(EvaluationError):
        parse_condition(expr)


def test_evaluation_is_deterministic_for_a_snapshot():
    user = make_user(inviter_id="i", github_stars=("r",))
    expr = 'and(has-inviter(), github-star("r"))'
    assert {evaluate_condition(expr, user) for _ in range(5)} == {True}


def test_supported_functions_cover_core_predicates():
    for name in ("true", "has-inviter", "github-star", "and"):
        assert name in SUPPORTED_FUNCTIONS
