from alembic import op
import sqlalchemy as sa

revision = "0001_maintenance_engine"
down_revision = None
branch_labels = None
depends_on = None

NOW = sa.text("CURRENT_TIMESTAMP")


def _has_table(conn, name: str) -> bool:
    return sa.inspect(conn).has_table(name)


def _created_at():
    return sa.Column("created_at", sa.DateTime(), nullable=False, server_default=NOW)


def upgrade():
    conn = op.get_bind()

    if not _has_table(conn, "organizations"):
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("slug", sa.String(80), nullable=False),
            sa.Column("name", sa.String(160), nullable=False),
            _created_at(),
        )
        op.create_index("ix_organizations_slug", "organizations", ["slug"], unique=True)

    if not _has_table(conn, "app_users"):
        op.create_table(
            "app_users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(200), nullable=False),
            sa.Column("display_name", sa.String(160), nullable=True),
            sa.Column("phone", sa.String(40), nullable=True),
            _created_at(),
        )
        op.create_index("ix_app_users_email", "app_users", ["email"], unique=True)

    if not _has_table(conn, "org_memberships"):
        op.create_table(
            "org_memberships",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id"), nullable=False, index=True),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=False, index=True),
            sa.Column("role", sa.String(20), nullable=False, server_default="tenant"),
            _created_at(),
            sa.UniqueConstraint("org_id", "user_id", name="uq_org_memberships_org_user"),
        )

    if not _has_table(conn, "audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("action", sa.String(80), nullable=False),
            sa.Column("entity_type", sa.String(80), nullable=False),
            sa.Column("entity_id", sa.String(80), nullable=False),
            sa.Column("before_json", sa.Text(), nullable=True),
            sa.Column("after_json", sa.Text(), nullable=True),
            _created_at(),
        )

    if not _has_table(conn, "workflow_events"):
        op.create_table(
            "workflow_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("property_id", sa.Integer(), nullable=True, index=True),
            sa.Column("request_id", sa.Integer(), nullable=True, index=True),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("event_type", sa.String(80), nullable=False, index=True),
            sa.Column("payload_json", sa.Text(), nullable=True),
            _created_at(),
        )

    if not _has_table(conn, "engine_locks"):
        op.create_table(
            "engine_locks",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("lock_key", sa.String(120), nullable=False, unique=True),
            sa.Column("owner", sa.String(120), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            _created_at(),
        )

    if not _has_table(conn, "properties"):
        op.create_table(
            "properties",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), sa.ForeignKey("organizations.id"), nullable=False, index=True),
            sa.Column("landlord_user_id", sa.Integer(), sa.ForeignKey("app_users.id"), nullable=True, index=True),
            sa.Column("name", sa.String(160), nullable=True),
            sa.Column("address", sa.String(255), nullable=False),
            sa.Column("city", sa.String(120), nullable=False),
            _created_at(),
        )

    if not _has_table(conn, "property_policies"):
        op.create_table(
            "property_policies",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id", ondelete="CASCADE"), nullable=False),
            sa.Column("payment_responsibility", sa.String(20), nullable=False, server_default="landlord"),
            sa.Column("split_ceiling", sa.Float(), nullable=False, server_default="0.0"),
            sa.Column("approval_mode", sa.String(20), nullable=False, server_default="over_amount"),
            sa.Column("auto_approval_limit", sa.Float(), nullable=True),
            sa.Column("require_photos", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("require_completion_photos", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("emergency_auto_approve", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("bid_window_hours", sa.Integer(), nullable=False, server_default="72"),
            sa.Column("updated_by_user_id", sa.Integer(), nullable=True),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=NOW),
            sa.UniqueConstraint("org_id", "property_id", name="uq_property_policies_org_property"),
        )

    if not _has_table(conn, "maintenance_requests"):
        op.create_table(
            "maintenance_requests",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False, index=True),
            sa.Column("tenant_user_id", sa.Integer(), nullable=False, index=True),
            sa.Column("title", sa.String(200), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("category", sa.String(40), nullable=False, server_default="general"),
            sa.Column("declared_urgency", sa.String(20), nullable=True),
            sa.Column("priority", sa.String(20), nullable=False, server_default="medium"),
            sa.Column("is_emergency", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("emergency_type", sa.String(20), nullable=True),
            sa.Column("workflow_status", sa.String(20), nullable=False, server_default="submitted", index=True),
            sa.Column("payment_responsibility", sa.String(20), nullable=False, server_default="landlord"),
            sa.Column("approval_status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("approval_reason", sa.Text(), nullable=True),
            sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
            sa.Column("approval_date", sa.DateTime(), nullable=True),
            sa.Column("denial_reason", sa.Text(), nullable=True),
            sa.Column("estimated_cost", sa.Float(), nullable=True),
            sa.Column("selected_bid_id", sa.Integer(), nullable=True),
            sa.Column("assigned_provider_id", sa.Integer(), nullable=True, index=True),
            sa.Column("assigned_at", sa.DateTime(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_by_user_id", sa.Integer(), nullable=True),
            sa.Column("cancellation_reason", sa.Text(), nullable=True),
            sa.Column("completion_date", sa.DateTime(), nullable=True),
            sa.Column("tenant_rating", sa.Integer(), nullable=True),
            sa.Column("tenant_review", sa.Text(), nullable=True),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=NOW),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        )

    if not _has_table(conn, "bids"):
        op.create_table(
            "bids",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("request_id", sa.Integer(), sa.ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False),
            sa.Column("provider_user_id", sa.Integer(), nullable=False, index=True),
            sa.Column("amount", sa.Float(), nullable=False),
            sa.Column("estimated_hours", sa.Float(), nullable=False),
            sa.Column("available_dates_json", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=NOW),
        )
        op.create_index("ix_bids_request_status", "bids", ["request_id", "status"])
        op.create_index(
            "uq_bids_one_accepted_per_request",
            "bids",
            ["request_id"],
            unique=True,
            postgresql_where=sa.text("status = 'accepted'"),
            sqlite_where=sa.text("status = 'accepted'"),
        )

    if not _has_table(conn, "escalation_rules"):
        op.create_table(
            "escalation_rules",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("trigger_condition", sa.String(20), nullable=False, server_default="any"),
            sa.Column("level", sa.Integer(), nullable=False),
            sa.Column("response_minutes", sa.Integer(), nullable=True),
            sa.Column("max_cost_authorization", sa.Float(), nullable=True),
            sa.Column("notify_user_ids_json", sa.Text(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            sa.UniqueConstraint("org_id", "property_id", "trigger_condition", "level", name="uq_escalation_rules_key"),
        )

    if not _has_table(conn, "emergency_contacts"):
        op.create_table(
            "emergency_contacts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("property_id", sa.Integer(), sa.ForeignKey("properties.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("name", sa.String(160), nullable=False),
            sa.Column("phone", sa.String(40), nullable=True),
            sa.Column("email", sa.String(200), nullable=True),
            sa.Column("tier", sa.Integer(), nullable=False, server_default="1"),
            _created_at(),
        )

    if not _has_table(conn, "escalation_tracking"):
        op.create_table(
            "escalation_tracking",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("request_id", sa.Integer(), sa.ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, unique=True),
            sa.Column("property_id", sa.Integer(), nullable=False, index=True),
            sa.Column("emergency_type", sa.String(20), nullable=False),
            sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("response_deadline", sa.DateTime(), nullable=True),
            sa.Column("deadline_kind", sa.String(20), nullable=True),
            sa.Column("notified_parties_json", sa.Text(), nullable=True),
            sa.Column("max_cost_authorization", sa.Float(), nullable=True),
            sa.Column("first_response_at", sa.DateTime(), nullable=True),
            sa.Column("first_responder_id", sa.Integer(), nullable=True),
            sa.Column("emergency_resolved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("resolution_time_minutes", sa.Integer(), nullable=True),
            sa.Column("closed_reason", sa.String(40), nullable=True),
            sa.Column("config_error", sa.Text(), nullable=True),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=NOW),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        )
        op.create_index("ix_escalation_tracking_due", "escalation_tracking", ["emergency_resolved", "response_deadline"])

    if not _has_table(conn, "escalation_notifications"):
        op.create_table(
            "escalation_notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("tracking_id", sa.Integer(), sa.ForeignKey("escalation_tracking.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("level", sa.Integer(), nullable=False),
            sa.Column("recipients_json", sa.Text(), nullable=True),
            _created_at(),
        )

    if not _has_table(conn, "photo_records"):
        op.create_table(
            "photo_records",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("request_id", sa.Integer(), sa.ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("kind", sa.String(20), nullable=False),
            sa.Column("url", sa.String(500), nullable=False),
            sa.Column("caption", sa.Text(), nullable=True),
            sa.Column("uploaded_by_user_id", sa.Integer(), nullable=False),
            sa.Column("verification_status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("verified_by_user_id", sa.Integer(), nullable=True),
            sa.Column("verification_notes", sa.Text(), nullable=True),
            sa.Column("verified_at", sa.DateTime(), nullable=True),
            _created_at(),
        )

    if not _has_table(conn, "provider_reliability"):
        op.create_table(
            "provider_reliability",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("provider_user_id", sa.Integer(), nullable=False, index=True),
            sa.Column("total_jobs", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_jobs", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("cancelled_jobs", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("no_show_jobs", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("rating_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("rating_sum", sa.Float(), nullable=False, server_default="0.0"),
            sa.Column("average_rating", sa.Float(), nullable=True),
            sa.Column("response_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("average_response_minutes", sa.Float(), nullable=True),
            sa.Column("average_completion_hours", sa.Float(), nullable=True),
            sa.Column("reliability_score", sa.Float(), nullable=False, server_default="100.0"),
            sa.Column("penalty_points", sa.Float(), nullable=False, server_default="0.0"),
            sa.Column("components_json", sa.Text(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=NOW),
            sa.UniqueConstraint("org_id", "provider_user_id", name="uq_provider_reliability_org_provider"),
        )

    if not _has_table(conn, "provider_penalties"):
        op.create_table(
            "provider_penalties",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("provider_user_id", sa.Integer(), nullable=False, index=True),
            sa.Column("request_id", sa.Integer(), nullable=True, index=True),
            sa.Column("dispute_id", sa.Integer(), nullable=True),
            sa.Column("penalty_type", sa.String(30), nullable=False),
            sa.Column("severity", sa.String(20), nullable=False, server_default="moderate"),
            sa.Column("points", sa.Float(), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="active"),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("appeal_notes", sa.Text(), nullable=True),
            sa.Column("issued_by_user_id", sa.Integer(), nullable=True),
            sa.Column("reviewed_by_user_id", sa.Integer(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            _created_at(),
            sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=NOW),
        )

    if not _has_table(conn, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("request_id", sa.Integer(), sa.ForeignKey("maintenance_requests.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("dispute_type", sa.String(20), nullable=False, server_default="other"),
            sa.Column("title", sa.String(200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("initiator_user_id", sa.Integer(), nullable=False),
            sa.Column("respondent_user_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="open"),
            sa.Column("priority", sa.String(20), nullable=False, server_default="medium"),
            sa.Column("evidence_json", sa.Text(), nullable=True),
            sa.Column("mediator_user_id", sa.Integer(), nullable=True),
            sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("resolution", sa.Text(), nullable=True),
            sa.Column("compensation_amount", sa.Float(), nullable=True),
            sa.Column("compensation_paid_to", sa.Integer(), nullable=True),
            sa.Column("penalty_id", sa.Integer(), nullable=True),
            _created_at(),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("closed_at", sa.DateTime(), nullable=True),
        )

    if not _has_table(conn, "dispute_timeline_events"):
        op.create_table(
            "dispute_timeline_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False, index=True),
            sa.Column("seq", sa.Integer(), nullable=False),
            sa.Column("event", sa.String(60), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _created_at(),
            sa.UniqueConstraint("dispute_id", "seq", name="uq_dispute_timeline_seq"),
        )

    if not _has_table(conn, "notification_outbox"):
        op.create_table(
            "notification_outbox",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("org_id", sa.Integer(), nullable=False, index=True),
            sa.Column("channel", sa.String(20), nullable=False, server_default="webhook"),
            sa.Column("recipient_user_id", sa.Integer(), nullable=True),
            sa.Column("recipient_address", sa.String(200), nullable=True),
            sa.Column("event_type", sa.String(80), nullable=False),
            sa.Column("payload_json", sa.Text(), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            _created_at(),
            sa.Column("sent_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_notification_outbox_status", "notification_outbox", ["status", "id"])


def downgrade():
    for name in (
        "notification_outbox",
        "dispute_timeline_events",
        "disputes",
        "provider_penalties",
        "provider_reliability",
        "photo_records",
        "escalation_notifications",
        "escalation_tracking",
        "emergency_contacts",
        "escalation_rules",
        "bids",
        "maintenance_requests",
        "property_policies",
        "properties",
        "engine_locks",
        "workflow_events",
        "audit_events",
        "org_memberships",
        "app_users",
        "organizations",
    ):
        op.drop_table(name)
