from datetime import datetime, timedelta, timezone

import pytest

from riskguard.security.encryption import EncryptionFramework
from riskguard.security.fingerprint import DeviceFingerprinter, RawDeviceInfo
from riskguard.services import RiskServices
from riskguard.storage.memory import MemoryStorage
from riskguard.storage.schemas import Transaction, User

# Friday 15 March 2024, 11:00 UTC: business hours, outside the benefit window
BASE_TIME = datetime(2024, 3, 15, 11, 0, tzinfo=timezone.utc)

USER_ID = "user-ramesh"
AGENT_ID = "agent-sita"
DEVICE_ID = "device-rampur-0001"
HOME = "Rampur, Uttar Pradesh"

ANDROID_UA = (
    "Mozilla/5.0 (Linux; Android 12; SM-A125F) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/112.0.5615.135 Mobile Safari/537.36"
)


class FixedClock:
    """Callable clock that only moves when told to"""

    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Spy:
    def __init__(self, return_value=None):
        self.calls = []
        self.return_value = return_value

    def __call__(self, *a, **kw):
        self.calls.append({"args": a, "kwargs": kw})
        return self.return_value


@pytest.fixture()
def spy():
    return Spy()


@pytest.fixture()
def clock():
    return FixedClock()


@pytest.fixture()
def storage():
    return MemoryStorage()


@pytest.fixture()
def user(storage):
    return storage.create_user(User(id=USER_ID, username="ramesh", phone_number="+91-9876543210"))


@pytest.fixture()
def agent(storage):
    return storage.create_user(User(id=AGENT_ID, username="sita", is_agent=True))


@pytest.fixture()
def encryption():
    # Low iteration count keeps key derivation fast in tests
    return EncryptionFramework(iterations=1000)


@pytest.fixture()
def services(storage, clock, encryption):
    return RiskServices(storage=storage, clock=clock, encryption=encryption)


@pytest.fixture()
def make_transaction(clock):
    def _make(**overrides) -> Transaction:
        values = {
            "user_id": USER_ID,
            "device_id": DEVICE_ID,
            "type": "debit",
            "amount": 1000.0,
            "description": "Grocery store purchase",
            "location": HOME,
            "timestamp": clock(),
        }
        values.update(overrides)
        return Transaction(**values)
    return _make


@pytest.fixture()
def raw_device():
    return RawDeviceInfo(
        user_agent=ANDROID_UA,
        platform="Linux armv8l",
        cpu_cores=8,
        memory_gb=3,
        screen_resolution="720x1600",
        timezone="Asia/Kolkata",
        language="hi-IN",
        ip_address="49.36.12.7",
        carrier="Jio",
        connection_type="4G",
        webgl_renderer="Mali-G52 MC2",
        canvas_fingerprint="c4a1e9",
        touch_support=True,
        battery_level=0.8,
    )


@pytest.fixture()
def registered_device(storage, user, clock, raw_device):
    fingerprinter = DeviceFingerprinter(storage, clock=clock)
    record, _ = fingerprinter.register_device(USER_ID, DEVICE_ID, raw_device)
    return record


@pytest.fixture()
def history(storage, user, registered_device, make_transaction, clock):
    """Ten daily grocery purchases of ₹1,000 at 11:00 from home"""
    created = []
    for days_ago in range(10, 0, -1):
        created.append(storage.create_transaction(make_transaction(
            timestamp=clock() - timedelta(days=days_ago),
            status="verified",
        )))
    return created
