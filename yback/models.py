import json
from datetime import datetime
from yback import db


JOB_STATUSES = ('pending', 'running', 'completed', 'failed')
SYNC_STATUSES = ('pending', 'syncing', 'synced', 'failed')


class Equipment(db.Model):
    """Network device with its reachability profiles (managed externally)"""
    __tablename__ = 'equipment'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    address = db.Column(db.String(255), nullable=False)
    device_type = db.Column(db.String(100), nullable=False)  # matched against recipe keys

    # SSH profile
    ssh_enabled = db.Column(db.Boolean, default=False, nullable=False)
    ssh_port = db.Column(db.Integer, default=22)
    ssh_username = db.Column(db.String(255))
    ssh_password = db.Column(db.Text)
    ssh_private_key = db.Column(db.Text)  # PEM content, not a path

    # HTTP profile
    http_enabled = db.Column(db.Boolean, default=False, nullable=False)
    http_port = db.Column(db.Integer)
    http_scheme = db.Column(db.String(10), default='http')  # http or https
    http_username = db.Column(db.String(255))
    http_password = db.Column(db.Text)
    ignore_cert_errors = db.Column(db.Boolean, default=False, nullable=False)

    # Telnet profile
    telnet_enabled = db.Column(db.Boolean, default=False, nullable=False)
    telnet_port = db.Column(db.Integer, default=23)
    telnet_username = db.Column(db.String(255))
    telnet_password = db.Column(db.Text)

    # Automatic backup
    auto_backup_enabled = db.Column(db.Boolean, default=False, nullable=False)
    auto_backup_cron = db.Column(db.String(100))

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    backups = db.relationship('Backup', back_populates='equipment', lazy='dynamic')

    def __repr__(self):
        return f'<Equipment {self.name} type={self.device_type} address={self.address}>'


class Provider(db.Model):
    """Storage provider configuration (managed externally)"""
    __tablename__ = 'providers'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # local, aws-s3, gcs, dropbox, google-drive
    config = db.Column(db.Text, nullable=False, default='{}')  # JSON string
    active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def get_config(self) -> dict:
        return json.loads(self.config or '{}')

    def __repr__(self):
        return f'<Provider {self.name} type={self.type} active={self.active}>'


class ReplicationJob(db.Model):
    """Cron-driven job replicating an equipment backup to a provider"""
    __tablename__ = 'replication_jobs'

    id = db.Column(db.Integer, primary_key=True)
    equipment_id = db.Column(db.Integer, db.ForeignKey('equipment.id'), nullable=False)
    provider_id = db.Column(db.Integer, db.ForeignKey('providers.id'), nullable=False)
    cron_expr = db.Column(db.String(100), nullable=False)
    active = db.Column(db.Boolean, default=True, nullable=False)
    status = db.Column(db.String(20), default='pending', nullable=False)  # pending, running, completed, failed
    last_run = db.Column(db.DateTime)
    next_run = db.Column(db.DateTime)
    last_error = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    equipment = db.relationship('Equipment')
    provider = db.relationship('Provider')

    def status_dict(self) -> dict:
        return {
            'status': self.status,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'next_run': self.next_run.isoformat() if self.next_run else None
        }

    def __repr__(self):
        return f'<ReplicationJob {self.id} equipment={self.equipment_id} status={self.status}>'


class Backup(db.Model):
    """Configuration artifact retrieved from a device, with its replication state"""
    __tablename__ = 'backups'

    id = db.Column(db.Integer, primary_key=True)
    equipment_id = db.Column(db.Integer, db.ForeignKey('equipment.id'), nullable=False)
    filename = db.Column(db.String(500), nullable=False)
    local_path = db.Column(db.String(1000), nullable=False)
    provider_type = db.Column(db.String(50), default='local', nullable=False)
    provider_path = db.Column(db.String(1000))
    size_bytes = db.Column(db.BigInteger, default=0, nullable=False)
    checksum = db.Column(db.String(64))  # md5 hex digest
    status = db.Column(db.String(20), default='active', nullable=False)
    metadata_json = db.Column('metadata', db.Text)

    # Replication state
    sync_status = db.Column(db.String(20), default='pending', nullable=False)  # pending, syncing, synced, failed
    sync_provider_id = db.Column(db.Integer, db.ForeignKey('providers.id'))
    sync_remote_path = db.Column(db.String(1000))
    sync_error = db.Column(db.Text)
    synced_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    equipment = db.relationship('Equipment', back_populates='backups')
    sync_provider = db.relationship('Provider')

    @property
    def extra(self) -> dict:
        return json.loads(self.metadata_json) if self.metadata_json else {}

    def __repr__(self):
        return f'<Backup {self.filename} equipment={self.equipment_id} sync={self.sync_status}>'
