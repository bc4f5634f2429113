import json
from urllib.parse import urlsplit

import pytest

from keygate_license_server.crypto import generate_key_pair
from keygate_license_server.db import db
from keygate_license_server.models import Product, Release, ReleaseFile, ReleaseStatus
from license_manager import LicenseManager

from .conftest import BUCKET, LICENSE_KEY

JAR_BYTES = b"\xca\xfe\xba\xbe compiled plugin " * 300


class _Response:
    def __init__(self, resp):
        self._resp = resp
        self.status_code = resp.status_code
        self.headers = resp.headers
        self.content = resp.get_data()

    def json(self):
        return json.loads(self.content)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def close(self):
        self._resp.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class FlaskSession:
    """Routes requests-style calls into the Flask test client."""

    def __init__(self, client):
        self.client = client

    def post(self, url, json=None, timeout=None):
        resp = self.client.post(urlsplit(url).path, json=json)
        db.session.expire_all()
        return _Response(resp)

    def get(self, url, params=None, timeout=None, stream=False):
        resp = self.client.get(urlsplit(url).path, query_string=params)
        db.session.expire_all()
        return _Response(resp)


@pytest.fixture
def manager(client, team, tmp_path):
    return LicenseManager(
        team.id,
        api_base="http://license.test",
        public_key_pem=team.key_pair.public_key,
        storage_dir=tmp_path,
        session=FlaskSession(client),
    )


def test_verify_saves_key(manager, make_license):
    make_license()

    result = manager.verify_license(LICENSE_KEY)

    assert result.ok
    assert result.status_code == 200
    assert result.message == "License is valid"
    assert len(manager.get_device_id()) == 32
    assert manager.get_saved_license_key() == LICENSE_KEY


def test_verify_unknown_key(manager, team):
    result = manager.verify_license("QQQQQ-QQQQQ-QQQQQ-QQQQQ-QQQQQ")

    assert not result.ok
    assert result.status_code == 404
    assert result.message == "License not found"
    assert manager.get_saved_license_key() == ""


def test_empty_key_is_not_sent(manager):
    result = manager.verify_license("   ")

    assert not result.ok
    assert result.message == "Please enter a license key."


def test_signature_from_wrong_key_is_rejected(client, team, make_license, tmp_path):
    make_license()
    other_public, _ = generate_key_pair()
    manager = LicenseManager(
        team.id, public_key_pem=other_public, storage_dir=tmp_path, session=FlaskSession(client),
    )

    result = manager.heartbeat(LICENSE_KEY)

    assert not result.ok
    assert result.message == "License server signature mismatch."


def test_download_release(manager, team, make_license, storage, tmp_path):
    team.limits.allow_classloader = True
    product = Product(team_id=team.id, name="Acme Plugin")
    db.session.add(product)
    db.session.flush()
    release = Release(product_id=product.id, version="1.2.0", status=ReleaseStatus.PUBLISHED, latest=True)
    db.session.add(release)
    db.session.flush()
    db.session.add(ReleaseFile(release_id=release.id, key="plugin.jar", size=len(JAR_BYTES),
                               main_class_name="com.acme.Plugin"))
    storage.put(BUCKET, "plugin.jar", JAR_BYTES)
    lic = make_license()
    lic.products.append(product)
    db.session.commit()

    out = tmp_path / "plugin.jar"
    result = manager.download_release(LICENSE_KEY, product.id, out)

    assert result.ok
    assert result.version == "1.2.0"
    assert result.main_class == "com.acme.Plugin"
    assert out.read_bytes() == JAR_BYTES


def test_download_rejection_is_reported(manager, team, make_license, tmp_path):
    make_license()

    result = manager.download_release(LICENSE_KEY, "6f1c1a2e-3b4d-4c5e-8f90-a1b2c3d4e5f6", tmp_path / "x.jar")

    assert not result.ok
    assert result.message == "Using classloader requires a higher plan. Either upgrade or contact support."
