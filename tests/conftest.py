import asyncio

import pytest

from applymail.ethereal import EtherealAccount, ServerInfo
from applymail.transport import SendResult

ETHEREAL_RESPONSE = "Accepted [STATUS=new MSGID=Y2FmZWJhYmUtZmFrZQ]"

SMTP_ENV = {
    "MAIL_HOST": "smtp.example.com",
    "MAIL_USER": "hr-bot@example.com",
    "MAIL_PASS": "s3cret",
}


class FakeTransport:
    """Records messages; raises for recipients listed in fail_for."""
    def __init__(self, options, *, fail_for=(), verify_error=None, response="250 OK queued"):
        self.options = options
        self.fail_for = set(fail_for)
        self.verify_error = verify_error
        self.response = response
        self.verify_calls = 0
        self.sent = []

    async def verify(self):
        self.verify_calls += 1
        if self.verify_error:
            raise self.verify_error
        return True

    async def send_mail(self, message):
        await asyncio.sleep(0)
        self.sent.append(message)
        if message.to in self.fail_for:
            raise ConnectionError(f"relay refused {message.to}")
        return SendResult(
            message_id=f"<{len(self.sent)}@test>",
            envelope={"from": message.from_addr, "to": [message.to]},
            accepted=[message.to],
            response=self.response,
        )


class TransportFactory:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.created = []

    def __call__(self, options):
        t = FakeTransport(options, **self.kwargs)
        self.created.append(t)
        return t

    @property
    def last(self):
        return self.created[-1]


class AccountFactory:
    def __init__(self, errors=()):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.errors:
            raise self.errors.pop(0)
        return EtherealAccount(
            user="kaci.fake@ethereal.email",
            password="pw",
            smtp=ServerInfo(host="smtp.ethereal.email", port=587, secure=False),
            web="https://ethereal.email",
        )


@pytest.fixture
def transport_factory():
    return TransportFactory()


@pytest.fixture
def account_factory():
    return AccountFactory()
