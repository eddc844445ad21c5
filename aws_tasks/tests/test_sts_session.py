"""Tests for the STS helpers: MFA sessions, assumed roles and shell status."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import pytest

from aws_tasks.sts_session import (
    STS_ENV_VARS,
    StsCredentials,
    assume_role,
    credentials_env,
    default_session_name,
    export_lines,
    mfa_session,
    session_status,
    unset_lines,
    unset_sts,
)
from core.errors import MfaError, StsError
from fakes import client_error

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
EXPIRY = NOW + timedelta(hours=12)
SERIAL = "arn:aws:iam::111111111111:mfa/alice"


def _creds(**overrides):
    creds = {
        "AccessKeyId": "ASIATEMP",
        "SecretAccessKey": "secret",
        "SessionToken": "token",
        "Expiration": EXPIRY,
    }
    creds.update(overrides)
    return creds


class FakeIam:
    def __init__(self, devices=None, error=None):
        self.devices = [{"SerialNumber": SERIAL}] if devices is None else devices
        self.error = error

    def list_mfa_devices(self):
        if self.error:
            raise self.error
        return {"MFADevices": self.devices}


class FakeSts:
    def __init__(self, credentials=None, error=None):
        self.credentials = _creds() if credentials is None else credentials
        self.error = error
        self.calls = []

    def get_session_token(self, **kwargs):
        self.calls.append(("get_session_token", kwargs))
        if self.error:
            raise self.error
        return {"Credentials": self.credentials}

    def get_caller_identity(self):
        return {"Account": "222222222222", "Arn": "arn:aws:iam::222222222222:user/alice"}

    def assume_role(self, **kwargs):
        self.calls.append(("assume_role", kwargs))
        if self.error:
            raise self.error
        return {"Credentials": self.credentials}


class FakeSession:
    region_name = "eu-west-1"

    def __init__(self, iam=None, sts=None):
        self.clients = {"iam": iam or FakeIam(), "sts": sts or FakeSts()}

    def client(self, service, region_name=None, config=None):
        return self.clients[service]


def test_unset_sts_removes_only_sts_variables():
    env = {"AWS_SESSION_TOKEN": "t", "AWS_ROLE": "Admin", "AWS_PROFILE": "dev", "HOME": "/root"}
    removed = unset_sts(env)
    assert removed == ["AWS_SESSION_TOKEN", "AWS_ROLE"]
    assert env == {"AWS_PROFILE": "dev", "HOME": "/root"}
    assert unset_lines() == [f"unset {name}" for name in STS_ENV_VARS]


def test_mfa_session_happy_path():
    sts = FakeSts()
    prompts = []

    def read_token(prompt):
        prompts.append(prompt)
        return " 123456\n"

    creds = mfa_session(FakeSession(sts=sts), read_token)
    assert prompts == ["MFA Token Code: "]
    assert sts.calls == [("get_session_token", {"TokenCode": "123456", "SerialNumber": SERIAL})]
    assert creds == StsCredentials("ASIATEMP", "secret", "token", EXPIRY)
    assert creds.complete


@pytest.mark.parametrize(
    "session,token",
    [
        (FakeSession(iam=FakeIam(devices=[])), "123456"),
        (FakeSession(iam=FakeIam(error=client_error("AccessDenied"))), "123456"),
        (FakeSession(), ""),
        (FakeSession(sts=FakeSts(error=client_error("AccessDenied"))), "123456"),
        (FakeSession(sts=FakeSts(credentials=_creds(SessionToken=""))), "123456"),
    ],
)
def test_mfa_session_failures(session, token):
    with pytest.raises(MfaError):
        mfa_session(session, lambda _p: token)


def test_assume_role_defaults_to_callers_account():
    sts = FakeSts()
    creds = assume_role(FakeSession(sts=sts), "Admin", session_name="alice-laptop")
    _, kwargs = sts.calls[0]
    assert kwargs == {
        "RoleArn": "arn:aws:iam::222222222222:role/Admin",
        "RoleSessionName": "alice-laptop",
    }
    assert creds.role == "Admin"


def test_assume_role_in_other_account_and_failure():
    sts = FakeSts()
    assume_role(FakeSession(sts=sts), "ReadOnly", "333333333333")
    assert sts.calls[0][1]["RoleArn"] == "arn:aws:iam::333333333333:role/ReadOnly"

    with pytest.raises(StsError):
        assume_role(FakeSession(sts=FakeSts(error=client_error("AccessDenied"))), "Admin")


def test_default_session_name_is_valid():
    name = default_session_name()
    assert 0 < len(name) <= 64
    assert re.fullmatch(r"[\w+=,.@-]+", name)


def test_credentials_env_for_mfa_and_role():
    mfa = StsCredentials("ASIA1", "s", "t", EXPIRY)
    assert credentials_env(mfa) == {
        "AWS_ACCESS_KEY_ID": "ASIA1",
        "AWS_SECRET_ACCESS_KEY": "s",
        "AWS_SESSION_TOKEN": "t",
        "AWS_MFA_EXPIRY": "2024-06-02T00:00:00+00:00",
    }
    role_env = credentials_env(StsCredentials("ASIA2", "s", "t", EXPIRY, role="Admin"))
    assert role_env["AWS_ROLE"] == "Admin"
    assert role_env["AWS_SESSION_EXPIRY"] == "2024-06-02T00:00:00+00:00"
    assert "AWS_MFA_EXPIRY" not in role_env


def test_export_lines_quote_values():
    assert export_lines({"A": "plain", "B": "with space"}) == [
        "export A=plain",
        "export B='with space'",
    ]


@pytest.mark.parametrize(
    "env,expected",
    [
        ({}, "[AWS_PROFILE: default]"),
        ({"AWS_PROFILE": "dev"}, "[AWS_PROFILE: dev]"),
        (
            {"AWS_PROFILE": "dev", "AWS_MFA_EXPIRY": "2024-06-01T13:02:03+00:00"},
            "[AWS_PROFILE: dev, MFA TTL: 01h 02m 03s]",
        ),
        (
            {"AWS_ROLE": "Admin", "AWS_SESSION_EXPIRY": "2024-06-01T12:00:05Z"},
            "[AWS_ROLE: Admin, SESSION TTL: 00h 00m 05s]",
        ),
        (
            {"AWS_ROLE": "Admin", "AWS_SESSION_EXPIRY": "2024-06-01T11:00:00+00:00"},
            "[AWS_ROLE: Admin, SESSION EXPIRED!]",
        ),
        ({"AWS_MFA_EXPIRY": "soon"}, "[AWS_PROFILE: default, MFA TTL: unknown]"),
    ],
)
def test_session_status(env, expected):
    assert session_status(env, now=NOW) == expected
