import pytest

from mongorole.settings import (
    ConfigurationSnapshot,
    log_level_number,
    parse_exempt_settings,
    parse_log_verbosity,
    parse_recycle_flag,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("", None),
        (None, None),
        ("v", "-v"),
        ("-vv", "-vv"),
        ("vvv", "-vvv"),
        ("-", "-"),
        ("-vvvvv", "-vvvvv"),
    ],
)
def test_parse_log_verbosity_recognized(value, expected):
    assert parse_log_verbosity(value) == expected


@pytest.mark.parametrize("value", ["x", "--v", "vx", "-V", " v", "v-", "verbose", "v\n", "-vv\n"])
def test_parse_log_verbosity_rejects_other_input(value):
    assert parse_log_verbosity(value) is None


@pytest.mark.parametrize("value", ["True", "TRUE", "true", "tRuE"])
def test_recycle_flag_true_any_case(value):
    assert parse_recycle_flag(value) is True


@pytest.mark.parametrize("value", ["false", "1", "yes", "", None, " true"])
def test_recycle_flag_false_otherwise(value):
    assert parse_recycle_flag(value) is False


def test_log_level_number_counts_v():
    assert log_level_number("-vvv") == 3
    assert log_level_number("-") == 0
    assert log_level_number(None) == 0


def test_parse_exempt_settings():
    assert parse_exempt_settings(" A, B ;C,,") == frozenset({"A", "B", "C"})
    assert parse_exempt_settings("") == frozenset()
    assert parse_exempt_settings(None) == frozenset()


def test_snapshot_is_replaced_not_mutated():
    snapshot = ConfigurationSnapshot(log_verbosity="-v")
    updated = snapshot.with_log_verbosity("-vv").with_recycle_on_exit(False)

    assert snapshot.log_verbosity == "-v"
    assert snapshot.recycle_on_exit is True
    assert updated.log_verbosity == "-vv"
    assert updated.recycle_on_exit is False

    exempt = updated.with_exempt_setting_names(["MongodLogVerbosity"])
    assert exempt.is_exempt("MongodLogVerbosity")
    assert not exempt.is_exempt("ReplicaSetName")
