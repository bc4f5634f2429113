from datetime import timedelta

import fakeredis

from keygate_license_server.crypto import verify_challenge
from keygate_license_server.db import db
from keygate_license_server.models import (
    BlacklistEntry, BlacklistType, Customer, Device, ExpirationStart, ExpirationType, License,
    Product, Release, ReleaseStatus, RequestLog, utcnow,
)
from keygate_license_server.rate_limiter import RateLimiter
from keygate_license_server.server import create_app

from .conftest import HWID_A, HWID_B, LICENSE_KEY


def _valid_logs():
    return RequestLog.query.filter_by(status="VALID").count()


def test_valid_license(verify, make_license):
    lic = make_license()

    resp = verify()

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["result"]["valid"] is True
    assert body["result"]["details"] == "License is valid"
    assert body["result"]["timestamp"].endswith("Z")
    assert body["data"]["license"]["id"] == lic.id
    assert body["data"]["license"]["status"] == "ACTIVE"

    device = Device.query.one()
    assert device.device_identifier == HWID_A
    assert device.ip_address == "1.1.1.1"
    assert _valid_logs() == 1
    assert db.session.get(License, lic.id).last_active_at is not None


def test_unknown_license(verify, team):
    resp = verify(licenseKey="ZZZZZ-ZZZZZ-ZZZZZ-ZZZZZ-ZZZZZ")

    assert resp.status_code == 404
    assert resp.get_json()["result"]["details"] == "License not found"
    log = RequestLog.query.one()
    assert log.status == "LICENSE_NOT_FOUND"
    assert log.status_code == 404


def test_ip_limit(verify, make_license):
    make_license(ip_limit=1)

    assert verify(ip="1.1.1.1").status_code == 200

    resp = verify(ip="2.2.2.2")
    assert resp.status_code == 403
    assert resp.get_json()["result"]["details"] == "IP limit reached"

    assert verify(ip="1.1.1.1").status_code == 200


def test_ip_limit_window(verify, make_license):
    make_license(ip_limit=1)
    assert verify(ip="1.1.1.1").status_code == 200

    RequestLog.query.update({RequestLog.created_at: utcnow() - timedelta(days=2)})
    db.session.commit()

    assert verify(ip="2.2.2.2").status_code == 200


def test_seat_limit(verify, make_license):
    make_license(hwid_limit=1)

    assert verify(hardwareIdentifier=HWID_A).status_code == 200

    resp = verify(hardwareIdentifier=HWID_B)
    assert resp.status_code == 403
    assert resp.get_json()["result"]["details"] == "HWID limit reached"
    assert Device.query.count() == 1

    # same device renews its seat
    assert verify(hardwareIdentifier=HWID_A).status_code == 200


def test_seat_frees_after_device_timeout(verify, make_license):
    make_license(hwid_limit=1)
    assert verify(hardwareIdentifier=HWID_A).status_code == 200

    Device.query.update({Device.last_beat_at: utcnow() - timedelta(hours=2)})
    db.session.commit()

    assert verify(hardwareIdentifier=HWID_B).status_code == 200


def test_forgotten_device_frees_seat(verify, make_license):
    make_license(hwid_limit=1)
    assert verify(hardwareIdentifier=HWID_A).status_code == 200

    Device.query.update({Device.forgotten: True, Device.forgotten_at: utcnow()})
    db.session.commit()

    assert verify(hardwareIdentifier=HWID_B).status_code == 200


def test_suspended_license(verify, make_license):
    make_license(
        suspended=True,
        expiration_type=ExpirationType.DATE,
        expiration_date=utcnow() - timedelta(days=1),
    )

    resp = verify()

    assert resp.status_code == 403
    body = resp.get_json()
    assert body["result"]["valid"] is False
    assert body["result"]["details"] == "License suspended"
    assert RequestLog.query.one().status == "LICENSE_SUSPENDED"


def test_expired_license(verify, make_license):
    make_license(expiration_type=ExpirationType.DATE, expiration_date=utcnow() - timedelta(minutes=1))

    resp = verify()

    assert resp.status_code == 403
    assert resp.get_json()["result"]["details"] == "License expired"


def test_activation_license_starts_clock_on_first_pass(verify, make_license):
    lic = make_license(
        expiration_type=ExpirationType.DURATION,
        expiration_start=ExpirationStart.ACTIVATION,
        expiration_days=30,
    )
    assert lic.expiration_date is None

    before = utcnow()
    resp = verify()

    assert resp.status_code == 200
    activated = db.session.get(License, lic.id).expiration_date
    assert activated is not None
    assert before + timedelta(days=30) <= activated <= utcnow() + timedelta(days=30)

    # later passes keep the first activation date
    assert verify().status_code == 200
    assert db.session.get(License, lic.id).expiration_date == activated


def test_blacklisted_ip_consumes_nothing(verify, make_license, blacklist):
    make_license(ip_limit=1, hwid_limit=1)
    blacklist(BlacklistType.IP_ADDRESS, "6.6.6.6")

    resp = verify(ip="6.6.6.6")

    assert resp.status_code == 403
    assert resp.get_json()["result"]["details"] == "IP address is blacklisted"
    assert Device.query.count() == 0
    assert _valid_logs() == 0
    assert BlacklistEntry.query.one().hits == 1

    # the IP slot and the seat are still free for a legitimate caller
    assert verify(ip="1.1.1.1").status_code == 200


def test_blacklisted_country_and_hardware(verify, make_license, blacklist):
    make_license()
    blacklist(BlacklistType.COUNTRY, "FIN")
    blacklist(BlacklistType.HARDWARE_IDENTIFIER, HWID_B)

    resp = verify(headers={"CF-IPCountry": "FI"})
    assert resp.status_code == 403
    assert resp.get_json()["result"]["details"] == "Country is blacklisted"

    resp = verify(hardwareIdentifier=HWID_B, headers={"CF-IPCountry": "SE"})
    assert resp.status_code == 403
    assert resp.get_json()["result"]["details"] == "Hardware identifier is blacklisted"

    resp = verify(headers={"CF-IPCountry": "SE"})
    assert resp.status_code == 200
    assert Device.query.one().country == "SWE"


def test_soft_deleted_team(verify, team, make_license):
    make_license()
    team.deleted_at = utcnow()
    db.session.commit()

    resp = verify()

    assert resp.status_code == 404
    assert resp.get_json()["result"]["details"] == "Team not found"


def test_invalid_team_uuid(verify, make_license):
    make_license()

    resp = verify(team_id="not-a-uuid")

    assert resp.status_code == 400
    assert resp.get_json()["result"]["details"] == "Invalid team UUID"


def test_invalid_json(client, team):
    resp = client.post(
        f"/v1/client/teams/{team.id}/verification/verify",
        data="{not json",
        content_type="application/json",
    )

    assert resp.status_code == 400
    assert resp.get_json()["result"]["details"] == "Invalid JSON payload"


def test_schema_error_is_reported(verify, make_license):
    make_license()

    resp = verify(body={"licenseKey": "bad"})

    assert resp.status_code == 400
    assert resp.get_json()["result"]["details"] == (
        "License key must be in the format of XXXXX-XXXXX-XXXXX-XXXXX-XXXXX"
    )


def test_device_identifier_alias(verify, make_license):
    make_license()

    assert verify(body={"licenseKey": LICENSE_KEY, "deviceIdentifier": HWID_B}).status_code == 200
    assert Device.query.one().device_identifier == HWID_B

    both = {"licenseKey": LICENSE_KEY, "deviceIdentifier": HWID_B, "hardwareIdentifier": HWID_A}
    assert verify(body=both).status_code == 200
    assert {d.device_identifier for d in Device.query.all()} == {HWID_A, HWID_B}


def test_challenge_is_signed(verify, team, make_license):
    make_license()

    resp = verify(challenge="challenge-abcdef")

    result = resp.get_json()["result"]
    assert verify_challenge("challenge-abcdef", result["challengeResponse"], team.key_pair.public_key)
    assert "challenge" not in result


def test_strict_customers(verify, team, make_license):
    lic = make_license()
    customer = Customer(team_id=team.id, email="a@example.com", full_name="A")
    db.session.add(customer)
    lic.customers.append(customer)
    team.settings.strict_customers = True
    db.session.commit()
    customer_id = customer.id

    resp = verify()
    assert resp.status_code == 404
    assert resp.get_json()["result"]["details"] == "Customer not found"

    resp = verify(customerId="6f1c1a2e-3b4d-4c5e-8f90-a1b2c3d4e5f6")
    assert resp.status_code == 404

    resp = verify(customerId=customer_id)
    assert resp.status_code == 200
    assert resp.get_json()["data"]["customers"][0]["email"] == "a@example.com"


def test_strict_products_and_release_version(verify, team, make_license):
    lic = make_license()
    product = Product(team_id=team.id, name="Plugin")
    db.session.add(product)
    db.session.flush()
    db.session.add(Release(product_id=product.id, version="1.0.0", status=ReleaseStatus.PUBLISHED, latest=True))
    lic.products.append(product)
    team.settings.strict_products = True
    db.session.commit()
    product_id = product.id

    resp = verify()
    assert resp.status_code == 404
    assert resp.get_json()["result"]["details"] == "Product not found"

    resp = verify(productId=product_id, version="9.9.9")
    assert resp.status_code == 404
    assert resp.get_json()["result"]["details"] == "Release not found with specified version"

    resp = verify(productId=product_id, version="1.0.0")
    assert resp.status_code == 200
    assert Release.query.one().last_seen_at is not None


def test_strict_releases_require_version(verify, team, make_license):
    lic = make_license()
    product = Product(team_id=team.id, name="Plugin")
    db.session.add(product)
    db.session.flush()
    db.session.add(Release(product_id=product.id, version="1.0.0", status=ReleaseStatus.PUBLISHED, latest=True))
    lic.products.append(product)
    db.session.commit()
    product_id = product.id

    # not strict: latest release is used
    assert verify(productId=product_id).status_code == 200

    team.settings.strict_releases = True
    db.session.commit()

    resp = verify(productId=product_id)
    assert resp.status_code == 404
    assert resp.get_json()["result"]["details"] == "Release not found with specified version"

    assert verify(productId=product_id, version="1.0.0").status_code == 200


def test_strict_releases_ignore_products_without_releases(verify, team, make_license):
    lic = make_license()
    product = Product(team_id=team.id, name="Plugin")
    db.session.add(product)
    lic.products.append(product)
    team.settings.strict_releases = True
    db.session.commit()

    assert verify(productId=product.id).status_code == 200


def test_ip_rate_limit(app, verify, make_license, redis_client):
    make_license()
    redis_client.set("rate_limit:license-verify:9.9.9.9", 30)

    resp = verify(ip="9.9.9.9")

    assert resp.status_code == 429
    assert resp.get_json()["result"]["details"] == "Rate limited"


def test_trusted_source_skips_rate_limit(config, verify, team, make_license, redis_client):
    make_license()
    config.trusted_license_keys = [LICENSE_KEY]
    config.trusted_team_ids = [team.id]
    redis_client.set("rate_limit:license-verify:9.9.9.9", 30)

    assert verify(ip="9.9.9.9").status_code == 200


def test_redis_outage_fails_closed(config, storage):
    server = fakeredis.FakeServer()
    server.connected = False
    app = create_app(config, rate_limiter=RateLimiter(fakeredis.FakeRedis(server=server)), storage=storage)

    with app.app_context():
        db.create_all()
        resp = app.test_client().post(
            "/v1/client/teams/6f1c1a2e-3b4d-4c5e-8f90-a1b2c3d4e5f6/verification/verify",
            json={"licenseKey": LICENSE_KEY, "hardwareIdentifier": HWID_A},
        )
        db.drop_all()

    assert resp.status_code == 500
    assert resp.get_json()["result"]["valid"] is False


def test_health(client):
    assert client.get("/health").get_json()["ok"] is True
