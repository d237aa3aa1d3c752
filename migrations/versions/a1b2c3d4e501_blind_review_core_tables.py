"""blind_review_core_tables

Create the blind review engine schema: calls, criteria, form schema
snapshots, organization members, proposals, proposal files, assignments,
reviews, review scores, conflict records, decisions, identity reveals,
notifications and the immutable audit log.

Revision ID: a1b2c3d4e501
Revises:
Create Date: 2026-03-02 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "a1b2c3d4e501"
down_revision = None
branch_labels = None
depends_on = None


_AUDIT_TRIGGER_UP = """
CREATE OR REPLACE FUNCTION prevent_audit_log_modification() RETURNS trigger AS $$
BEGIN
  RAISE EXCEPTION 'Audit logs are immutable and cannot be modified or deleted';
END;
$$ LANGUAGE plpgsql;
CREATE TRIGGER audit_logs_immutable
  BEFORE UPDATE OR DELETE ON audit_logs
  FOR EACH ROW EXECUTE FUNCTION prevent_audit_log_modification();
"""

_AUDIT_TRIGGER_DOWN = """
DROP TRIGGER IF EXISTS audit_logs_immutable ON audit_logs;
DROP FUNCTION IF EXISTS prevent_audit_log_modification();
"""


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "calls" not in existing_tables:
        op.create_table(
            "calls",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("title", sa.String(300), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
            sa.Column("min_reviewers_per_proposal", sa.Integer(), nullable=False, server_default="2"),
            _ts("review_deadline", nullable=True),
            sa.Column("blind_review_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("blind_code_strategy", sa.String(20), nullable=False, server_default="sequential"),
            sa.Column("blind_code_prefix", sa.String(20), nullable=True),
            sa.Column("public_applicant_fields_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("created_by", sa.String(36), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("ix_calls_organization_id", "calls", ["organization_id"])

    if "criteria" not in existing_tables:
        op.create_table(
            "criteria",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("call_id", sa.String(36), nullable=False),
            sa.Column("name", sa.String(200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("max_score", sa.Numeric(6, 2), nullable=False, server_default="10"),
            sa.Column("weight", sa.Numeric(6, 2), nullable=False, server_default="1"),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["call_id"], ["calls.id"], ondelete="CASCADE"),
            sa.CheckConstraint("weight > 0", name="ck_criteria_weight_positive"),
            sa.CheckConstraint("max_score > 0", name="ck_criteria_max_positive"),
        )
        op.create_index("ix_criteria_call_id", "criteria", ["call_id"])
        op.create_index("ix_criteria_call_order", "criteria", ["call_id", "sort_order"])

    if "form_schema_snapshots" not in existing_tables:
        op.create_table(
            "form_schema_snapshots",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("call_id", sa.String(36), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("schema_json", sa.Text(), nullable=False, server_default="{}"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["call_id"], ["calls.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("call_id", "version", name="uq_schema_call_version"),
        )
        op.create_index("ix_form_schema_snapshots_call_id", "form_schema_snapshots", ["call_id"])

    if "organization_members" not in existing_tables:
        op.create_table(
            "organization_members",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("user_id", sa.String(36), nullable=False),
            sa.Column("role", sa.String(20), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="active"),
            sa.Column("full_name", sa.String(255), nullable=True),
            sa.Column("email", sa.String(255), nullable=True),
            sa.Column("institution", sa.String(255), nullable=True),
            sa.Column("research_area", sa.String(255), nullable=True),
            _ts("created_at"),
            sa.UniqueConstraint("organization_id", "user_id", "role", name="uq_member_org_user_role"),
        )
        op.create_index("ix_organization_members_organization_id", "organization_members",
                        ["organization_id"])
        op.create_index("ix_organization_members_user_id", "organization_members", ["user_id"])
        op.create_index("ix_member_org_role_status", "organization_members",
                        ["organization_id", "role", "status"])

    if "proposals" not in existing_tables:
        op.create_table(
            "proposals",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("call_id", sa.String(36), nullable=False),
            sa.Column("applicant_id", sa.String(36), nullable=False),
            sa.Column("title", sa.String(500), nullable=True),
            sa.Column("knowledge_area", sa.String(255), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
            sa.Column("blind_code", sa.String(40), nullable=True),
            _ts("blind_code_generated_at", nullable=True),
            _ts("submitted_at", nullable=True),
            sa.Column("answers_json", sa.Text(), nullable=False, server_default="{}"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["call_id"], ["calls.id"], ondelete="RESTRICT"),
        )
        op.create_index("ix_proposals_organization_id", "proposals", ["organization_id"])
        op.create_index("ix_proposals_call_id", "proposals", ["call_id"])
        op.create_index("ix_proposals_applicant_id", "proposals", ["applicant_id"])
        op.create_index("ix_proposal_call_status", "proposals", ["call_id", "status"])
        op.create_index("uq_proposal_call_blind_code", "proposals", ["call_id", "blind_code"],
                        unique=True)

    if "proposal_files" not in existing_tables:
        op.create_table(
            "proposal_files",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("proposal_id", sa.String(36), nullable=False),
            sa.Column("original_name", sa.String(500), nullable=True),
            sa.Column("file_type", sa.String(100), nullable=True),
            _ts("uploaded_at"),
            sa.ForeignKeyConstraint(["proposal_id"], ["proposals.id"], ondelete="CASCADE"),
        )
        op.create_index("ix_proposal_files_proposal_id", "proposal_files", ["proposal_id"])

    if "assignments" not in existing_tables:
        op.create_table(
            "assignments",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("proposal_id", sa.String(36), nullable=False),
            sa.Column("reviewer_id", sa.String(36), nullable=False),
            sa.Column("assigned_by", sa.String(36), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="assigned"),
            sa.Column("conflict_declared", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("conflict_reason", sa.Text(), nullable=True),
            _ts("assigned_at"),
            _ts("opened_at", nullable=True),
            _ts("submitted_at", nullable=True),
            sa.ForeignKeyConstraint(["proposal_id"], ["proposals.id"], ondelete="RESTRICT"),
        )
        op.create_index("ix_assignments_proposal_id", "assignments", ["proposal_id"])
        op.create_index("ix_assignments_reviewer_id", "assignments", ["reviewer_id"])
        op.create_index("ix_assignment_reviewer_status", "assignments", ["reviewer_id", "status"])
        op.create_index(
            "uq_assignment_active_pair",
            "assignments",
            ["proposal_id", "reviewer_id"],
            unique=True,
            postgresql_where=sa.text("status != 'cancelled'"),
            sqlite_where=sa.text("status != 'cancelled'"),
        )

    if "reviews" not in existing_tables:
        op.create_table(
            "reviews",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("assignment_id", sa.String(36), nullable=False, unique=True),
            sa.Column("proposal_id", sa.String(36), nullable=False),
            sa.Column("overall_score", sa.Numeric(5, 2), nullable=True),
            sa.Column("recommendation", sa.String(40), nullable=True),
            sa.Column("comments_to_committee", sa.Text(), nullable=True),
            _ts("submitted_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["assignment_id"], ["assignments.id"], ondelete="CASCADE"),
        )
        op.create_index("ix_reviews_proposal_id", "reviews", ["proposal_id"])

    if "review_scores" not in existing_tables:
        op.create_table(
            "review_scores",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("review_id", sa.String(36), nullable=False),
            sa.Column("criterion_id", sa.String(36), nullable=False),
            sa.Column("score", sa.Numeric(6, 2), nullable=False),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.ForeignKeyConstraint(["review_id"], ["reviews.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["criterion_id"], ["criteria.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("review_id", "criterion_id", name="uq_review_score_criterion"),
        )
        op.create_index("ix_review_scores_review_id", "review_scores", ["review_id"])

    if "conflict_records" not in existing_tables:
        op.create_table(
            "conflict_records",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("reviewer_id", sa.String(36), nullable=False),
            sa.Column("proposal_id", sa.String(36), nullable=True),
            sa.Column("applicant_id", sa.String(36), nullable=True),
            sa.Column("institution", sa.String(255), nullable=True),
            sa.Column("reason", sa.Text(), nullable=False),
            sa.Column("source", sa.String(20), nullable=False),
            sa.Column("declared_by", sa.String(36), nullable=False),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["proposal_id"], ["proposals.id"], ondelete="RESTRICT"),
            sa.CheckConstraint(
                "(CASE WHEN proposal_id IS NOT NULL THEN 1 ELSE 0 END)"
                " + (CASE WHEN applicant_id IS NOT NULL THEN 1 ELSE 0 END)"
                " + (CASE WHEN institution IS NOT NULL THEN 1 ELSE 0 END) = 1",
                name="ck_conflict_single_target",
            ),
        )
        op.create_index("ix_conflict_records_organization_id", "conflict_records", ["organization_id"])
        op.create_index("ix_conflict_records_reviewer_id", "conflict_records", ["reviewer_id"])
        op.create_index("ix_conflict_reviewer_proposal", "conflict_records",
                        ["reviewer_id", "proposal_id"])
        op.create_index("ix_conflict_reviewer_applicant", "conflict_records",
                        ["reviewer_id", "applicant_id"])

    if "proposal_decisions" not in existing_tables:
        op.create_table(
            "proposal_decisions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("proposal_id", sa.String(36), nullable=False, unique=True),
            sa.Column("decision", sa.String(20), nullable=False),
            sa.Column("justification", sa.Text(), nullable=True),
            sa.Column("decided_by", sa.String(36), nullable=False),
            _ts("decided_at"),
            sa.ForeignKeyConstraint(["proposal_id"], ["proposals.id"], ondelete="RESTRICT"),
        )

    if "identity_reveals" not in existing_tables:
        op.create_table(
            "identity_reveals",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("proposal_id", sa.String(36), nullable=False),
            sa.Column("call_id", sa.String(36), nullable=False),
            sa.Column("revealed_by", sa.String(36), nullable=False),
            sa.Column("reason", sa.Text(), nullable=False),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["proposal_id"], ["proposals.id"], ondelete="RESTRICT"),
        )
        op.create_index("ix_identity_reveals_proposal_id", "identity_reveals", ["proposal_id"])
        op.create_index("ix_identity_reveals_call_id", "identity_reveals", ["call_id"])

    if "notifications" not in existing_tables:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("organization_id", sa.String(36), nullable=True),
            sa.Column("recipient_id", sa.String(36), nullable=False),
            sa.Column("title", sa.String(300), nullable=False),
            sa.Column("message", sa.Text(), nullable=True),
            sa.Column("category", sa.String(30), nullable=True),
            sa.Column("severity", sa.String(20), nullable=True),
            sa.Column("entity_type", sa.String(30), nullable=True),
            sa.Column("entity_id", sa.String(36), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            _ts("read_at", nullable=True),
            _ts("created_at", nullable=True),
        )
        op.create_index("ix_notifications_organization_id", "notifications", ["organization_id"])
        op.create_index("ix_notifications_recipient_id", "notifications", ["recipient_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("organization_id", sa.String(36), nullable=True),
            sa.Column("entity_type", sa.String(30), nullable=False),
            sa.Column("entity_id", sa.String(36), nullable=False),
            sa.Column("action", sa.String(60), nullable=False),
            sa.Column("actor", sa.String(150), nullable=False, server_default="system"),
            sa.Column("diff_json", sa.Text(), nullable=True),
            _ts("timestamp"),
        )
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_org", "audit_logs", ["organization_id"])
        op.create_index("idx_audit_actor", "audit_logs", ["actor"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])

        if bind.dialect.name == "postgresql":
            op.execute(_AUDIT_TRIGGER_UP)


def downgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "audit_logs" in existing_tables and bind.dialect.name == "postgresql":
        op.execute(_AUDIT_TRIGGER_DOWN)

    for table in (
        "audit_logs",
        "notifications",
        "identity_reveals",
        "proposal_decisions",
        "conflict_records",
        "review_scores",
        "reviews",
        "assignments",
        "proposal_files",
        "proposals",
        "organization_members",
        "form_schema_snapshots",
        "criteria",
        "calls",
    ):
        if table in existing_tables:
            op.drop_table(table)
