# crm_database.py

import uuid
from extensions import db
from utils.datetime_utils import utc_now, to_db_time
from services.enums import (
    JourneyStatus, JourneyContactStatus, ExecutionStatus, AfterHoursAction, ResubmissionAction
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _db_now():
    return to_db_time(utc_now())


# --- Tenant Model ---
class Tenant(db.Model):
    __tablename__ = 'tenant'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    name = db.Column(db.String(200), nullable=False)
    timezone = db.Column(db.String(50), nullable=True)
    lead_statuses = db.Column(db.JSON, nullable=True)  # Allowed lead status vocabulary
    booking_link_slug = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=_db_now)


class Contact(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(36), db.ForeignKey('tenant.id'), nullable=True, index=True)
    first_name = db.Column(db.String(50), nullable=False)
    last_name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(20), nullable=True, index=True)
    timezone = db.Column(db.String(50), nullable=True)
    lead_status = db.Column(db.String(50), nullable=True)
    lead_source = db.Column(db.String(100), nullable=True)
    contact_metadata = db.Column(db.JSON, nullable=True)  # Custom attributes bag
    created_at = db.Column(db.DateTime, default=_db_now)
    updated_at = db.Column(db.DateTime, default=_db_now, onupdate=_db_now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def is_opted_out(self) -> bool:
        now = to_db_time(utc_now())
        for flag in self.flags:
            if flag.flag_type != 'opted_out' or flag.applies_to not in ('sms', 'both'):
                continue
            if flag.expires_at is None or flag.expires_at > now:
                return True
        return False


# --- ContactFlag Model (for opt-outs and compliance) ---
class ContactFlag(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    contact_id = db.Column(db.Integer, db.ForeignKey('contact.id'), nullable=False, index=True)
    flag_type = db.Column(db.String(50), nullable=False)  # 'opted_out', 'do_not_contact', 'office_number'
    flag_reason = db.Column(db.Text, nullable=True)
    applies_to = db.Column(db.String(20), default='sms')  # 'sms', 'call', 'both'
    created_at = db.Column(db.DateTime, default=_db_now)
    expires_at = db.Column(db.DateTime, nullable=True)
    created_by = db.Column(db.String(100), nullable=True)

    contact = db.relationship('Contact', backref='flags')


# --- Activity Model: call log and message log ---
class Activity(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(36), nullable=True, index=True)
    contact_id = db.Column(db.Integer, db.ForeignKey('contact.id'), nullable=True, index=True)
    external_id = db.Column(db.String(100), nullable=True, index=True)  # Provider message SID / call unique id

    activity_type = db.Column(db.String(20))  # 'call', 'message'
    direction = db.Column(db.String(10))  # 'incoming', 'outgoing'
    status = db.Column(db.String(50))  # 'initiated', 'answered', 'busy', 'no_answer', 'sent', ...

    from_number = db.Column(db.String(20), nullable=True, index=True)
    to_number = db.Column(db.String(20), nullable=True, index=True)
    body = db.Column(db.Text, nullable=True)
    duration_seconds = db.Column(db.Integer, nullable=True)

    campaign_id = db.Column(db.Integer, db.ForeignKey('campaign.id', ondelete='SET NULL'), nullable=True)
    journey_id = db.Column(db.String(36), nullable=True, index=True)
    activity_metadata = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, default=_db_now, index=True)
    updated_at = db.Column(db.DateTime, default=_db_now, onupdate=_db_now)

    contact = db.relationship('Contact', backref=db.backref('activities', lazy='dynamic'))


class Campaign(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(36), nullable=True, index=True)
    name = db.Column(db.String(200))
    status = db.Column(db.String(20), default='draft')  # 'draft', 'running', 'paused', 'complete'
    created_at = db.Column(db.DateTime, default=_db_now)

    memberships = db.relationship('CampaignMembership', backref='campaign', lazy=True, cascade="all, delete-orphan")


class CampaignMembership(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    contact_id = db.Column(db.Integer, db.ForeignKey('contact.id'), nullable=False)
    campaign_id = db.Column(db.Integer, db.ForeignKey('campaign.id'), nullable=False)
    status = db.Column(db.String(50), default='pending')  # 'pending', 'sent', 'removed'
    membership_metadata = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=_db_now)

    contact = db.relationship('Contact', backref='campaign_memberships')

    __table_args__ = (
        db.UniqueConstraint('campaign_id', 'contact_id', name='uq_campaign_membership_contact'),
    )


class CampaignTemplate(db.Model):
    """Stored SMS template, plain or AI-assisted"""
    __tablename__ = 'campaign_templates'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.String(36), nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    template_kind = db.Column(db.String(20), default='standard')  # 'standard', 'ai'
    variables = db.Column(db.JSON, default=list)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=_db_now)

    def __repr__(self):
        return f'<CampaignTemplate {self.id}: {self.name}>'


class NumberPool(db.Model):
    """Ordered set of sending numbers; each entry is {phoneNumber, phoneNumberId, dailyLimit}"""
    __tablename__ = 'number_pool'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    numbers = db.Column(db.JSON, nullable=False, default=list)
    default_daily_limit = db.Column(db.Integer, default=200)
    created_at = db.Column(db.DateTime, default=_db_now)


class StoredWebhook(db.Model):
    """Reusable webhook definition referenced by EXECUTE_WEBHOOK nodes"""
    __tablename__ = 'stored_webhook'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    url = db.Column(db.String(1000), nullable=False)
    method = db.Column(db.String(10), default='POST')
    headers = db.Column(db.JSON, nullable=True)
    body = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=_db_now)


class VoiceTemplate(db.Model):
    """Text-to-speech script with {{variable}} placeholders"""
    __tablename__ = 'voice_template'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    script = db.Column(db.Text, nullable=False)
    voice_config = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=_db_now)


class GeneratedAudio(db.Model):
    """Rendered audio, either pre-generated for a journey or cached TTS output"""
    __tablename__ = 'generated_audio'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    cache_key = db.Column(db.String(64), nullable=True, unique=True)
    voice_template_id = db.Column(db.String(36), nullable=True)
    audio_path = db.Column(db.String(500), nullable=False)
    duration_seconds = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime, default=_db_now)


class ExecutionRules(db.Model):
    """Per-tenant after-hours and resubmission handling"""
    __tablename__ = 'execution_rules'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.String(36), nullable=False, unique=True)

    enable_after_hours_handling = db.Column(db.Boolean, nullable=False, default=True)
    after_hours_action = db.Column(db.String(40), nullable=False,
                                   default=AfterHoursAction.RESCHEDULE_NEXT_AVAILABLE.value)
    after_hours_reschedule_time = db.Column(db.String(5), nullable=True)  # HH:mm
    after_hours_default_event_node_id = db.Column(db.String(36), nullable=True)
    after_hours_business_hours = db.Column(db.JSON, nullable=True)  # {startHour, endHour, daysOfWeek, timezone}

    enable_resubmission_handling = db.Column(db.Boolean, nullable=False, default=True)
    resubmission_detection_window_hours = db.Column(db.Integer, nullable=False, default=24)
    resubmission_action = db.Column(db.String(40), nullable=False,
                                    default=ResubmissionAction.SKIP_DUPLICATE.value)
    resubmission_reschedule_delay_hours = db.Column(db.Integer, nullable=False, default=24)
    resubmission_default_event_node_id = db.Column(db.String(36), nullable=True)

    created_at = db.Column(db.DateTime, default=_db_now)
    updated_at = db.Column(db.DateTime, default=_db_now, onupdate=_db_now)


# --- Journey Models ---
class Journey(db.Model):
    __tablename__ = 'journey'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=JourneyStatus.DRAFT.value)
    schedule_config = db.Column(db.JSON, nullable=True)  # {enabled, timezone, allowedDays, allowedHours}
    entry_criteria = db.Column(db.JSON, nullable=True)
    removal_criteria = db.Column(db.JSON, nullable=True)  # {enabled, webhookToken, conditions: [...]}
    auto_enroll_enabled = db.Column(db.Boolean, default=False)
    started_at = db.Column(db.DateTime, nullable=True)
    paused_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=_db_now)
    updated_at = db.Column(db.DateTime, default=_db_now, onupdate=_db_now)

    nodes = db.relationship('JourneyNode', backref='journey', lazy=True,
                            cascade="all, delete-orphan",
                            order_by='JourneyNode.created_at')
    journey_contacts = db.relationship('JourneyContact', backref='journey', lazy='dynamic',
                                       cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Journey {self.id}: {self.name} ({self.status})>'


class JourneyNode(db.Model):
    __tablename__ = 'journey_node'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    journey_id = db.Column(db.String(36), db.ForeignKey('journey.id', ondelete='CASCADE'),
                           nullable=False, index=True)
    tenant_id = db.Column(db.String(36), nullable=False)
    type = db.Column(db.String(40), nullable=False)
    name = db.Column(db.String(200), nullable=True)
    config = db.Column(db.JSON, nullable=False, default=dict)
    connections = db.Column(db.JSON, nullable=False, default=dict)  # {nextNodeId, outputs}
    created_at = db.Column(db.DateTime, default=_db_now, nullable=False)

    def __repr__(self):
        return f'<JourneyNode {self.id}: {self.type}>'


class JourneyContact(db.Model):
    __tablename__ = 'journey_contact'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.String(36), nullable=False, index=True)
    journey_id = db.Column(db.String(36), db.ForeignKey('journey.id', ondelete='CASCADE'), nullable=False)
    contact_id = db.Column(db.Integer, db.ForeignKey('contact.id'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=JourneyContactStatus.ACTIVE.value)
    current_node_id = db.Column(db.String(36), nullable=True)
    enrolled_at = db.Column(db.DateTime, default=_db_now)
    completed_at = db.Column(db.DateTime, nullable=True)
    paused_at = db.Column(db.DateTime, nullable=True)
    removed_at = db.Column(db.DateTime, nullable=True)
    enrollment_source = db.Column(db.String(30), nullable=True)
    enrollment_data = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=_db_now)
    updated_at = db.Column(db.DateTime, default=_db_now, onupdate=_db_now)

    contact = db.relationship('Contact', backref='journey_memberships')
    executions = db.relationship('JourneyNodeExecution', backref='journey_contact', lazy='dynamic',
                                 cascade="all, delete-orphan")

    __table_args__ = (
        db.UniqueConstraint('journey_id', 'contact_id', name='uq_journey_contact'),
        db.Index('idx_journey_contact_status', 'journey_id', 'status'),
    )


class JourneyNodeExecution(db.Model):
    __tablename__ = 'journey_node_execution'

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    tenant_id = db.Column(db.String(36), nullable=False)
    journey_id = db.Column(db.String(36), nullable=False, index=True)
    node_id = db.Column(db.String(36), db.ForeignKey('journey_node.id', ondelete='CASCADE'), nullable=False)
    journey_contact_id = db.Column(db.String(36), db.ForeignKey('journey_contact.id', ondelete='CASCADE'),
                                   nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ExecutionStatus.PENDING.value)
    scheduled_at = db.Column(db.DateTime, nullable=False)
    executed_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    result = db.Column(db.JSON, nullable=True)
    awaiting_callback = db.Column(db.Boolean, nullable=False, default=False)
    call_correlation_id = db.Column(db.String(100), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=_db_now)

    node = db.relationship('JourneyNode', backref=db.backref('executions', lazy='dynamic',
                                                            cascade="all, delete-orphan"))

    __table_args__ = (
        db.Index('idx_journey_execution_due', 'status', 'scheduled_at'),
        db.Index('idx_journey_execution_contact', 'journey_contact_id', 'created_at'),
        # At most one PENDING/EXECUTING row per (node, journey contact)
        db.Index(
            'uq_journey_execution_open', 'node_id', 'journey_contact_id', unique=True,
            postgresql_where=db.text("status IN ('PENDING', 'EXECUTING')"),
            sqlite_where=db.text("status IN ('PENDING', 'EXECUTING')"),
        ),
    )

    def __repr__(self):
        return f'<JourneyNodeExecution {self.id}: node={self.node_id} {self.status}>'
