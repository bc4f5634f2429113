import fakeredis
import pytest

from keygate_license_server.config import ServerConfig
from keygate_license_server.db import db
from keygate_license_server.models import BlacklistEntry
from keygate_license_server.rate_limiter import RateLimiter
from keygate_license_server.seed_licenses import add_license, create_team
from keygate_license_server.server import create_app
from keygate_license_server.storage import StoredObject

SECRET = "test-secret"
BUCKET = "private-releases"
LICENSE_KEY = "AAAAA-AAAAA-AAAAA-AAAAA-AAAAA"
OTHER_LICENSE_KEY = "BBBBB-BBBBB-BBBBB-BBBBB-BBBBB"
HWID_A = "HWID-AAAAAAAAAAAA"
HWID_B = "HWID-BBBBBBBBBBBB"


class MemoryStorage:
    """Object storage double: serves bytes in small chunks and records closes."""

    def __init__(self, chunk_size: int = 7):
        self.objects = {}
        self.closed = []
        self.chunk_size = chunk_size

    def put(self, bucket, key, data: bytes):
        self.objects[(bucket, key)] = data

    def get_object(self, bucket, key):
        data = self.objects.get((bucket, key))
        if data is None:
            return None
        chunks = [data[i:i + self.chunk_size] for i in range(0, len(data), self.chunk_size)]
        return StoredObject(size=len(data), chunks=iter(chunks), close=lambda: self.closed.append(key))


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def config():
    return ServerConfig(database_uri="sqlite://", hmac_secret=SECRET, storage_bucket=BUCKET)


@pytest.fixture
def app(config, redis_client, storage):
    app = create_app(config, rate_limiter=RateLimiter(redis_client), storage=storage)
    app.config["TESTING"] = True
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def team(app):
    return create_team("Acme")


@pytest.fixture
def make_license(team):
    def _make(license_key=LICENSE_KEY, owner=None, **fields):
        return add_license(owner or team, license_key, SECRET, **fields)
    return _make


@pytest.fixture
def blacklist(team):
    def _add(kind, value):
        db.session.add(BlacklistEntry(team_id=team.id, type=kind, value=value))
        db.session.commit()
    return _add


@pytest.fixture
def verify(client, team):
    def _post(body=None, ip="1.1.1.1", action="verify", team_id=None, headers=None, **fields):
        payload = {"licenseKey": LICENSE_KEY, "hardwareIdentifier": HWID_A}
        payload.update(fields)
        if body is not None:
            payload = body
        all_headers = {"CF-Connecting-IP": ip}
        all_headers.update(headers or {})
        resp = client.post(
            f"/v1/client/teams/{team_id or team.id}/verification/{action}",
            json=payload,
            headers=all_headers,
        )
        db.session.expire_all()
        return resp
    return _post
