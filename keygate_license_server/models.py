import enum
import uuid
from datetime import datetime, timezone

from .db import db


def utcnow() -> datetime:
    # naive UTC, so values compare the same on sqlite and postgres
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class BlacklistType(str, enum.Enum):
    IP_ADDRESS = "IP_ADDRESS"
    COUNTRY = "COUNTRY"
    HARDWARE_IDENTIFIER = "HARDWARE_IDENTIFIER"


class IpLimitPeriod(str, enum.Enum):
    DAY = "DAY"
    WEEK = "WEEK"
    MONTH = "MONTH"


class ExpirationType(str, enum.Enum):
    NEVER = "NEVER"
    DATE = "DATE"
    DURATION = "DURATION"


class ExpirationStart(str, enum.Enum):
    CREATION = "CREATION"
    ACTIVATION = "ACTIVATION"


class ReleaseStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    DEPRECATED = "DEPRECATED"
    ARCHIVED = "ARCHIVED"


class RequestType(str, enum.Enum):
    VERIFY = "VERIFY"
    HEARTBEAT = "HEARTBEAT"
    CLASSLOADER = "CLASSLOADER"


license_customers = db.Table(
    "license_customers",
    db.Column("license_id", db.String(36), db.ForeignKey("licenses.id"), primary_key=True),
    db.Column("customer_id", db.String(36), db.ForeignKey("customers.id"), primary_key=True),
)

license_products = db.Table(
    "license_products",
    db.Column("license_id", db.String(36), db.ForeignKey("licenses.id"), primary_key=True),
    db.Column("product_id", db.String(36), db.ForeignKey("products.id"), primary_key=True),
)

release_allowed_licenses = db.Table(
    "release_allowed_licenses",
    db.Column("release_id", db.String(36), db.ForeignKey("releases.id"), primary_key=True),
    db.Column("license_id", db.String(36), db.ForeignKey("licenses.id"), primary_key=True),
)


class Team(db.Model):
    __tablename__ = "teams"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    deleted_at = db.Column(db.DateTime, nullable=True)  # soft delete

    key_pair = db.relationship("KeyPair", uselist=False, back_populates="team")
    settings = db.relationship("TeamSettings", uselist=False, back_populates="team")
    limits = db.relationship("TeamLimits", uselist=False, back_populates="team")
    blacklist = db.relationship("BlacklistEntry", back_populates="team")


class KeyPair(db.Model):
    __tablename__ = "key_pairs"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False, unique=True)
    public_key = db.Column(db.Text, nullable=False)
    private_key = db.Column(db.Text, nullable=False)  # server-side only

    team = db.relationship("Team", back_populates="key_pair")


class TeamSettings(db.Model):
    __tablename__ = "team_settings"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False, unique=True)
    strict_customers = db.Column(db.Boolean, nullable=False, default=False)
    strict_products = db.Column(db.Boolean, nullable=False, default=False)
    strict_releases = db.Column(db.Boolean, nullable=False, default=False)
    ip_limit_period = db.Column(
        db.Enum(IpLimitPeriod, native_enum=False), nullable=False, default=IpLimitPeriod.DAY
    )
    device_timeout_seconds = db.Column(db.Integer, nullable=False, default=3600)

    team = db.relationship("Team", back_populates="settings")


class TeamLimits(db.Model):
    __tablename__ = "team_limits"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False, unique=True)
    allow_classloader = db.Column(db.Boolean, nullable=False, default=False)

    team = db.relationship("Team", back_populates="limits")


class BlacklistEntry(db.Model):
    __tablename__ = "blacklist"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False)
    type = db.Column(db.Enum(BlacklistType, native_enum=False), nullable=False)
    value = db.Column(db.String(255), nullable=False)
    hits = db.Column(db.Integer, nullable=False, default=0)

    team = db.relationship("Team", back_populates="blacklist")

    __table_args__ = (
        db.UniqueConstraint("team_id", "type", "value", name="uq_blacklist_team_type_value"),
    )


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    full_name = db.Column(db.String(255), nullable=True)


class License(db.Model):
    __tablename__ = "licenses"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False)
    license_key_lookup = db.Column(db.String(64), nullable=False)  # HMAC(licenseKey:teamId)

    suspended = db.Column(db.Boolean, nullable=False, default=False)
    expiration_type = db.Column(
        db.Enum(ExpirationType, native_enum=False), nullable=False, default=ExpirationType.NEVER
    )
    expiration_start = db.Column(
        db.Enum(ExpirationStart, native_enum=False), nullable=False, default=ExpirationStart.CREATION
    )
    expiration_date = db.Column(db.DateTime, nullable=True)
    expiration_days = db.Column(db.Integer, nullable=True)

    ip_limit = db.Column(db.Integer, nullable=True)
    hwid_limit = db.Column(db.Integer, nullable=True)

    last_active_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    team = db.relationship("Team")
    customers = db.relationship("Customer", secondary=license_customers, lazy="selectin")
    products = db.relationship("Product", secondary=license_products, lazy="selectin")
    devices = db.relationship("Device", back_populates="license")

    __table_args__ = (
        db.UniqueConstraint("team_id", "license_key_lookup", name="uq_team_license_lookup"),
    )


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    releases = db.relationship("Release", back_populates="product")
    branches = db.relationship("ReleaseBranch", back_populates="product")


class ReleaseBranch(db.Model):
    __tablename__ = "release_branches"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    product = db.relationship("Product", back_populates="branches")

    __table_args__ = (
        db.UniqueConstraint("product_id", "name", name="uq_branch_product_name"),
    )


class Release(db.Model):
    __tablename__ = "releases"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False)
    branch_id = db.Column(db.String(36), db.ForeignKey("release_branches.id"), nullable=True)
    version = db.Column(db.String(255), nullable=False)
    status = db.Column(
        db.Enum(ReleaseStatus, native_enum=False), nullable=False, default=ReleaseStatus.DRAFT
    )
    latest = db.Column(db.Boolean, nullable=False, default=False)
    last_seen_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    product = db.relationship("Product", back_populates="releases")
    branch = db.relationship("ReleaseBranch")
    file = db.relationship("ReleaseFile", uselist=False, back_populates="release")
    allowed_licenses = db.relationship("License", secondary=release_allowed_licenses)


class ReleaseFile(db.Model):
    __tablename__ = "release_files"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    release_id = db.Column(db.String(36), db.ForeignKey("releases.id"), nullable=False, unique=True)
    key = db.Column(db.String(512), nullable=False)  # object storage key
    size = db.Column(db.BigInteger, nullable=False, default=0)
    checksum = db.Column(db.String(128), nullable=True)
    main_class_name = db.Column(db.String(255), nullable=True)  # set for JAR releases
    created_at = db.Column(db.DateTime, default=utcnow)

    release = db.relationship("Release", back_populates="file")


class Device(db.Model):
    __tablename__ = "devices"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    license_id = db.Column(db.String(36), db.ForeignKey("licenses.id"), nullable=False)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False)
    device_identifier = db.Column(db.String(1000), nullable=False)
    ip_address = db.Column(db.String(64), nullable=True)
    country = db.Column(db.String(3), nullable=True)
    last_beat_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    forgotten = db.Column(db.Boolean, nullable=False, default=False)
    forgotten_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    license = db.relationship("License", back_populates="devices")

    __table_args__ = (
        db.UniqueConstraint("license_id", "device_identifier", name="uq_license_device"),
    )


class RequestLog(db.Model):
    __tablename__ = "request_logs"

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.String(36), db.ForeignKey("teams.id"), nullable=False)
    license_key_lookup = db.Column(db.String(64), nullable=True, index=True)
    customer_id = db.Column(db.String(36), nullable=True)
    product_id = db.Column(db.String(36), nullable=True)
    release_id = db.Column(db.String(36), nullable=True)
    device_identifier = db.Column(db.String(1000), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    country = db.Column(db.String(3), nullable=True)
    type = db.Column(db.Enum(RequestType, native_enum=False), nullable=False)
    status = db.Column(db.String(64), nullable=False)
    status_code = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
