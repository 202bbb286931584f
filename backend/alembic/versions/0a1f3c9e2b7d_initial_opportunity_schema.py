"""Initial opportunity engine schema

Revision ID: 0a1f3c9e2b7d
Revises:
Create Date: 2026-09-28 10:00:00.000000

Creates tenants, dispensing records, triggers with their payer overrides,
the opportunity ledger, the discovery queue, reference formulary tables,
scan logs and the audit log. Opportunities that have been actioned are
protected from deletion by a row trigger.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0a1f3c9e2b7d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _now():
    return sa.text("now()")


def upgrade() -> None:
    # 1. Tenants and patients
    op.create_table(
        "pharmacies",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pharmacy_code", sa.String(30), nullable=False),
        sa.Column("pharmacy_name", sa.String(200), nullable=False),
        sa.Column("state", sa.String(2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_demo", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), server_default=_now(), nullable=False),
    )
    op.create_index("ix_pharmacies_pharmacy_code", "pharmacies", ["pharmacy_code"], unique=True)

    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pharmacy_id", sa.Integer(), sa.ForeignKey("pharmacies.id"), nullable=False),
        sa.Column("patient_hash", sa.String(64), nullable=False),
        sa.Column("chronic_conditions", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("profile_updated_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=_now(), nullable=False),
        sa.UniqueConstraint("pharmacy_id", "patient_hash", name="uq_patients_pharmacy_hash"),
    )
    op.create_index("ix_patients_pharmacy_id", "patients", ["pharmacy_id"])

    # 2. Dispensing records (written by ingestion, read by scans)
    op.create_table(
        "dispensing_records",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pharmacy_id", sa.Integer(), sa.ForeignKey("pharmacies.id"), nullable=False),
        sa.Column("patient_id", sa.Integer(), sa.ForeignKey("patients.id"), nullable=False),
        sa.Column("rx_number", sa.String(30), nullable=False),
        sa.Column("dispensed_date", sa.Date(), nullable=False),
        sa.Column("drug_name", sa.String(200), nullable=False),
        sa.Column("ndc", sa.String(11), nullable=True),
        sa.Column("quantity", sa.Numeric(10, 2), nullable=True),
        sa.Column("days_supply", sa.Integer(), nullable=True),
        sa.Column("insurance_bin", sa.String(10), nullable=True),
        sa.Column("insurance_group", sa.String(50), nullable=True),
        sa.Column("contract_id", sa.String(20), nullable=True),
        sa.Column("plan_name", sa.String(200), nullable=True),
        sa.Column("prescriber_name", sa.String(200), nullable=True),
        sa.Column("prescriber_npi", sa.String(10), nullable=True),
        sa.Column("gross_profit", sa.Numeric(12, 2), nullable=True),
        sa.Column("acquisition_cost", sa.Numeric(12, 2), nullable=True),
        sa.Column("insurance_pay", sa.Numeric(12, 2), nullable=True),
        sa.Column("patient_pay", sa.Numeric(12, 2), nullable=True),
        sa.Column("ingested_at", sa.DateTime(), server_default=_now(), nullable=False),
        sa.UniqueConstraint("pharmacy_id", "rx_number", "dispensed_date", name="uq_dispensing_rx_fill"),
    )
    op.create_index("ix_dispensing_records_patient_id", "dispensing_records", ["patient_id"])
    op.create_index("ix_dispensing_pharmacy_date", "dispensing_records", ["pharmacy_id", "dispensed_date"])
    op.create_index("ix_dispensing_bin_group", "dispensing_records", ["insurance_bin", "insurance_group"])

    # 3. Triggers and per-payer overrides
    op.create_table(
        "triggers",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("trigger_code", sa.String(50), nullable=False),
        sa.Column("display_name", sa.String(200), nullable=False),
        sa.Column("trigger_type", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("detection_keywords", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("keyword_match_mode", sa.String(10), nullable=False, server_default="any"),
        sa.Column("exclude_keywords", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("if_has_keywords", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("if_not_has_keywords", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("pharmacy_inclusions", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("bin_restriction", sa.String(500), nullable=True),
        sa.Column("group_restriction", sa.String(1000), nullable=True),
        sa.Column("contract_prefix_exclusions", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("recommended_drug", sa.String(200), nullable=False),
        sa.Column("recommended_ndc", sa.String(11), nullable=True),
        sa.Column("default_gp_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("expected_days_supply", sa.Integer(), nullable=True),
        sa.Column("annual_fills", sa.Integer(), nullable=False, server_default="12"),
        sa.Column("clinical_rationale", sa.Text(), nullable=True),
        sa.Column("action_instructions", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=_now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=_now(), nullable=False),
    )
    op.create_index("ix_triggers_trigger_code", "triggers", ["trigger_code"], unique=True)

    op.create_table(
        "trigger_bin_values",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("trigger_id", sa.Integer(), sa.ForeignKey("triggers.id", ondelete="CASCADE"), nullable=False),
        sa.Column("insurance_bin", sa.String(10), nullable=False),
        sa.Column("insurance_group", sa.String(50), nullable=True),
        sa.Column("gp_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("coverage_status", sa.String(20), nullable=False, server_default="unknown"),
        sa.Column("is_excluded", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("best_ndc", sa.String(11), nullable=True),
        sa.Column("best_drug_name", sa.String(200), nullable=True),
        sa.Column("avg_qty", sa.Numeric(10, 2), nullable=True),
        sa.Column("verified_claim_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("most_recent_claim", sa.Date(), nullable=True),
        sa.Column("is_manual_override", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("manual_gp_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("manual_ndc", sa.String(11), nullable=True),
        sa.Column("manual_note", sa.Text(), nullable=True),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=_now(), nullable=False),
    )
    op.create_index("ix_trigger_bin_values_trigger_id", "trigger_bin_values", ["trigger_id"])
    op.execute(
        "CREATE UNIQUE INDEX uq_trigger_bin_values_payer "
        "ON trigger_bin_values (trigger_id, insurance_bin, COALESCE(insurance_group, ''))"
    )

    # 4. Opportunity ledger
    op.create_table(
        "opportunities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("opportunity_id", sa.String(20), nullable=False),
        sa.Column("pharmacy_id", sa.Integer(), sa.ForeignKey("pharmacies.id"), nullable=False),
        sa.Column("patient_id", sa.Integer(), sa.ForeignKey("patients.id"), nullable=False),
        sa.Column("dispensing_record_id", sa.Integer(), sa.ForeignKey("dispensing_records.id"), nullable=True),
        sa.Column("trigger_id", sa.Integer(), sa.ForeignKey("triggers.id"), nullable=True),
        sa.Column("opportunity_type", sa.String(30), nullable=False),
        sa.Column("current_drug_name", sa.String(200), nullable=True),
        sa.Column("current_ndc", sa.String(11), nullable=True),
        sa.Column("recommended_drug_name", sa.String(200), nullable=False),
        sa.Column("recommended_ndc", sa.String(11), nullable=True),
        sa.Column("avg_dispensed_qty", sa.Numeric(10, 2), nullable=True),
        sa.Column("potential_margin_gain", sa.Numeric(12, 2), nullable=False),
        sa.Column("annual_margin_gain", sa.Numeric(12, 2), nullable=False),
        sa.Column("value_source", sa.String(20), nullable=True),
        sa.Column("clinical_rationale", sa.Text(), nullable=True),
        sa.Column("clinical_priority", sa.String(10), nullable=True),
        sa.Column("prescriber_name", sa.String(200), nullable=True),
        sa.Column("insurance_bin", sa.String(10), nullable=True),
        sa.Column("insurance_group", sa.String(50), nullable=True),
        sa.Column("claim_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="Not Submitted"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("scan_batch_id", sa.String(64), nullable=True),
        sa.Column("actioned_by", sa.String(100), nullable=True),
        sa.Column("actioned_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=_now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=_now(), nullable=False),
    )
    op.create_index("ix_opportunities_opportunity_id", "opportunities", ["opportunity_id"], unique=True)
    op.create_index("ix_opportunities_pharmacy_id", "opportunities", ["pharmacy_id"])
    op.create_index("ix_opportunities_patient_id", "opportunities", ["patient_id"])
    op.create_index("ix_opportunities_trigger_id", "opportunities", ["trigger_id"])
    op.create_index("ix_opportunities_status", "opportunities", ["status"])
    op.create_index("ix_opportunities_scan_batch_id", "opportunities", ["scan_batch_id"])
    op.execute(
        "CREATE UNIQUE INDEX uq_opportunities_patient_drug_live "
        "ON opportunities (pharmacy_id, patient_id, UPPER(recommended_drug_name)) "
        "WHERE status NOT IN ('Denied', 'Declined')"
    )

    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_actioned_opportunity_delete() RETURNS TRIGGER AS $$
        BEGIN
            IF OLD.status <> 'Not Submitted' THEN
                RAISE EXCEPTION 'Cannot delete actioned opportunity (status: %)', OLD.status;
            END IF;
            RETURN OLD;
        END;
        $$ LANGUAGE plpgsql
    """)
    op.execute(
        "CREATE TRIGGER trg_opportunities_protect_actioned "
        "BEFORE DELETE ON opportunities "
        "FOR EACH ROW EXECUTE FUNCTION prevent_actioned_opportunity_delete()"
    )

    # 5. Discovery queue
    op.create_table(
        "pending_opportunity_types",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pending_type_id", sa.String(20), nullable=False),
        sa.Column("recommended_drug_name", sa.String(200), nullable=False),
        sa.Column("opportunity_type", sa.String(30), nullable=False, server_default="therapeutic_interchange"),
        sa.Column("source", sa.String(30), nullable=False, server_default="negative_gp_scan"),
        sa.Column("source_details", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("sample_data", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("affected_pharmacies", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("total_patient_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_annual_margin", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("coverage_confidence", sa.String(20), nullable=False, server_default="none"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("reviewed_by", sa.String(100), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("created_trigger_id", sa.Integer(), sa.ForeignKey("triggers.id"), nullable=True),
        sa.Column("scan_batch_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=_now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=_now(), nullable=False),
    )
    op.create_index("ix_pending_opportunity_types_pending_type_id", "pending_opportunity_types", ["pending_type_id"], unique=True)
    op.create_index("ix_pending_opportunity_types_status", "pending_opportunity_types", ["status"])

    op.create_table(
        "opportunity_approval_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("pending_type_id", sa.Integer(), sa.ForeignKey("pending_opportunity_types.id"), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("performed_by", sa.String(100), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("trigger_id", sa.Integer(), sa.ForeignKey("triggers.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=_now(), nullable=False),
    )
    op.create_index("ix_opportunity_approval_log_pending_type_id", "opportunity_approval_log", ["pending_type_id"])

    # 6. Reference data
    op.create_table(
        "cms_formulary_drugs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("formulary_id", sa.String(20), nullable=False),
        sa.Column("contract_id", sa.String(20), nullable=True),
        sa.Column("plan_name", sa.String(200), nullable=True),
        sa.Column("ndc", sa.String(11), nullable=False),
        sa.Column("tier_level", sa.Integer(), nullable=True),
        sa.Column("prior_authorization", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("step_therapy", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("quantity_limit", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("quantity_limit_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("quantity_limit_days", sa.Integer(), nullable=True),
    )
    op.create_index("ix_cms_formulary_drugs_formulary_id", "cms_formulary_drugs", ["formulary_id"])
    op.create_index("ix_cms_formulary_drugs_ndc", "cms_formulary_drugs", ["ndc"])

    op.create_table(
        "formulary_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("insurance_bin", sa.String(10), nullable=False),
        sa.Column("insurance_group", sa.String(50), nullable=True),
        sa.Column("drug_name", sa.String(200), nullable=False),
        sa.Column("ndc", sa.String(11), nullable=True),
        sa.Column("tier", sa.Integer(), nullable=True),
        sa.Column("tier_description", sa.String(50), nullable=True),
        sa.Column("preferred", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("on_formulary", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("prior_auth_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("step_therapy_required", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reimbursement_rate", sa.Numeric(12, 2), nullable=True),
        sa.Column("estimated_copay", sa.Numeric(10, 2), nullable=True),
        sa.Column("data_source", sa.String(50), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=_now(), nullable=False),
    )
    op.create_index("ix_formulary_items_insurance_bin", "formulary_items", ["insurance_bin"])

    op.create_table(
        "therapeutic_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("category_code", sa.String(50), nullable=False, unique=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("drug_patterns", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
    )

    # 7. Run bookkeeping and audit trail
    op.create_table(
        "scan_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("scan_type", sa.String(30), nullable=False),
        sa.Column("pharmacy_scope", postgresql.JSONB(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("records_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("opportunities_found", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("opportunities_by_type", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("stats", postgresql.JSONB(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("started_at", sa.DateTime(), server_default=_now(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_scan_logs_batch_id", "scan_logs", ["batch_id"], unique=True)

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("event_id", sa.String(36), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("actor", sa.String(100), nullable=False),
        sa.Column("action", sa.String(500), nullable=False),
        sa.Column("resource_type", sa.String(30), nullable=True),
        sa.Column("resource_id", sa.String(64), nullable=True),
        sa.Column("details", postgresql.JSONB(), nullable=False, server_default="{}"),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("current_hash", sa.String(64), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=_now(), nullable=False),
    )
    op.create_index("ix_audit_log_event_id", "audit_log", ["event_id"], unique=True)
    op.create_index("ix_audit_log_event_type", "audit_log", ["event_type"])
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("scan_logs")
    op.drop_table("therapeutic_categories")
    op.drop_table("formulary_items")
    op.drop_table("cms_formulary_drugs")
    op.drop_table("opportunity_approval_log")
    op.drop_table("pending_opportunity_types")
    op.execute("DROP TRIGGER IF EXISTS trg_opportunities_protect_actioned ON opportunities")
    op.execute("DROP FUNCTION IF EXISTS prevent_actioned_opportunity_delete()")
    op.drop_table("opportunities")
    op.drop_table("trigger_bin_values")
    op.drop_table("triggers")
    op.drop_table("dispensing_records")
    op.drop_table("patients")
    op.drop_table("pharmacies")
