# alembic/versions/20261019_initial_schema.py
"""Creates the complete initial schema, plus the audit-log immutability trigger on PostgreSQL

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '20261019_initial'
down_revision = None
branch_labels = None
depends_on = None

# Enum columns persist member NAMES (SQLAlchemy's default for Python enums).
ENUMS = {
    'componentstatus': ('HEALTHY', 'DEGRADED', 'UNHEALTHY'),
    'thresholdtype': ('ABOVE', 'BELOW', 'EQUALS', 'CHANGE_PERCENTAGE'),
    'alertlevel': ('INFO', 'WARNING', 'CRITICAL'),
    'anomalytype': ('LATENCY_SPIKE', 'ERROR_RATE_INCREASE', 'RESOURCE_EXHAUSTION', 'METRIC_DEVIATION', 'BEHAVIORAL_SIGNAL'),
    'anomalyseverity': ('LOW', 'MODERATE', 'HIGH', 'CRITICAL'),
    'anomalystatus': ('DETECTED', 'ACKNOWLEDGED', 'RESOLVED', 'FALSE_POSITIVE'),
    'risklevel': ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL'),
    'approvalstatus': ('PENDING', 'APPROVED', 'REJECTED', 'AUTO_APPROVED'),
    'decisionstatus': ('PENDING', 'EXECUTED', 'FAILED'),
    'recommendedaction': ('APPROVE', 'REJECT', 'ESCALATE'),
    'queuestatus': ('QUEUED', 'IN_PROGRESS', 'EXECUTED', 'FAILED', 'REJECTED', 'EXPIRED'),
    'urgency': ('LOW', 'MEDIUM', 'HIGH', 'CRITICAL'),
    'recommendationactiontype': ('CREATE_TASK', 'SEND_NOTIFICATION', 'INVOKE_WEBHOOK', 'ADJUST_THRESHOLD',
                                 'TRIGGER_RECOVERY', 'RUN_SELF_TEST'),
    'executionmode': ('IMMEDIATE', 'SCHEDULED'),
    'recoveryactiontype': ('RESTART_FUNCTION', 'ROLLBACK_DEPLOYMENT', 'SCALE_UP', 'SCALE_DOWN', 'CLEAR_CACHE',
                           'RESET_CONNECTION', 'FAILOVER', 'CIRCUIT_BREAKER', 'RATE_LIMIT', 'ALERT_ESCALATION'),
    'recoverystatus': ('PENDING', 'IN_PROGRESS', 'COMPLETED', 'FAILED', 'TIMEOUT', 'CANCELLED', 'ROLLED_BACK'),
    'triggertype': ('AUTOMATIC', 'MANUAL'),
    'actortype': ('USER', 'SYSTEM', 'AUTOMATION'),
    'selftestoutcome': ('PASS', 'FAIL'),
}


def _enum(name):
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def _created_at():
    return sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    is_pg = op.get_bind().dialect.name == 'postgresql'

    # --- ENUM Types (Idempotent Check) ---
    if is_pg:
        for enum_name, values in ENUMS.items():
            literal = ", ".join(f"'{v}'" for v in values)
            op.execute(f"""
                DO $$
                BEGIN
                    IF NOT EXISTS (SELECT 1 FROM pg_type WHERE typname = '{enum_name}') THEN
                        CREATE TYPE {enum_name} AS ENUM ({literal});
                    END IF;
                END$$;
            """)

    # OPERATORS
    op.create_table('operators',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('hashed_password', sa.String(length=255), nullable=False),
        sa.Column('roles', _json(), nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_operators_email', 'operators', ['email'], unique=True)

    # HEALTH
    op.create_table('health_samples',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('sample_id', sa.String(length=64), nullable=False),
        sa.Column('component_type', sa.String(length=64), nullable=False),
        sa.Column('component_name', sa.String(length=128), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('latency_ms', sa.Float(), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('metrics', _json(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id', 'component_type', 'component_name', 'sample_id', name='uq_health_sample'),
    )
    op.create_index('ix_health_samples_owner_id', 'health_samples', ['owner_id'])
    op.create_index('ix_health_samples_component_ts', 'health_samples',
                    ['owner_id', 'component_type', 'component_name', 'timestamp'])

    op.create_table('health_windows',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('component_type', sa.String(length=64), nullable=False),
        sa.Column('component_name', sa.String(length=128), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('window_end', sa.DateTime(), nullable=False),
        sa.Column('sample_count', sa.Integer(), nullable=False),
        sa.Column('latency_p50_ms', sa.Float(), nullable=False),
        sa.Column('latency_p95_ms', sa.Float(), nullable=False),
        sa.Column('latency_p99_ms', sa.Float(), nullable=False),
        sa.Column('error_count', sa.Integer(), nullable=False),
        sa.Column('error_rate', sa.Float(), nullable=False),
        sa.Column('availability_percentage', sa.Float(), nullable=False),
        sa.Column('status', _enum('componentstatus'), nullable=False),
        sa.Column('metrics_avg', _json(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id', 'component_type', 'component_name', 'window_start',
                            name='uq_health_window_identity'),
    )
    for col in ('owner_id', 'component_type', 'component_name', 'window_start', 'status'):
        op.create_index(f'ix_health_windows_{col}', 'health_windows', [col])

    # THRESHOLDS
    op.create_table('metric_thresholds',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('metric_name', sa.String(length=128), nullable=False),
        sa.Column('threshold_value', sa.Float(), nullable=False),
        sa.Column('threshold_type', _enum('thresholdtype'), nullable=False),
        sa.Column('alert_level', _enum('alertlevel'), nullable=False),
        sa.Column('cooldown_minutes', sa.Integer(), server_default='60', nullable=False),
        sa.Column('enabled', sa.Boolean(), server_default=sa.text('true'), nullable=False),
        sa.Column('auto_adjusted', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('adjustment_factor', sa.Float(), server_default='2.0', nullable=False),
        sa.Column('last_triggered_at', sa.DateTime(), nullable=True),
        sa.Column('trigger_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('alert_channels', _json(), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id', 'metric_name', 'threshold_type', name='uq_threshold_owner_metric_type'),
    )
    op.create_index('ix_metric_thresholds_owner_id', 'metric_thresholds', ['owner_id'])
    op.create_index('ix_metric_thresholds_metric_name', 'metric_thresholds', ['metric_name'])

    op.create_table('metric_observations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('metric_name', sa.String(length=128), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('component_type', sa.String(length=64), nullable=True),
        sa.Column('component_name', sa.String(length=128), nullable=True),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_metric_observations_lookup', 'metric_observations', ['owner_id', 'metric_name', 'observed_at'])

    op.create_table('alert_history',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('threshold_id', sa.Integer(), nullable=False),
        sa.Column('metric_name', sa.String(length=128), nullable=False),
        sa.Column('observed_value', sa.Float(), nullable=False),
        sa.Column('threshold_value', sa.Float(), nullable=False),
        sa.Column('alert_level', _enum('alertlevel'), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('triggered_at', sa.DateTime(), nullable=False),
        sa.Column('acknowledged', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.Column('acknowledged_by', sa.String(length=128), nullable=True),
        sa.ForeignKeyConstraint(['threshold_id'], ['metric_thresholds.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_alert_history_owner_id', 'alert_history', ['owner_id'])
    op.create_index('ix_alert_history_threshold_id', 'alert_history', ['threshold_id'])

    # RECOVERY (before anomalies, which reference it)
    op.create_table('recovery_actions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('action_type', _enum('recoveryactiontype'), nullable=False),
        sa.Column('action_category', sa.String(length=32), nullable=False),
        sa.Column('target_component_type', sa.String(length=64), nullable=False),
        sa.Column('target_component_name', sa.String(length=128), nullable=False),
        sa.Column('action_config', _json(), nullable=True),
        sa.Column('trigger_type', _enum('triggertype'), nullable=False),
        sa.Column('triggered_by', sa.String(length=128), nullable=True),
        sa.Column('triggered_by_anomaly_id', sa.Integer(), nullable=True),
        sa.Column('execution_status', _enum('recoverystatus'), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('retry_policy', _json(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('timeout_seconds', sa.Integer(), nullable=False),
        sa.Column('dry_run', sa.Boolean(), nullable=False),
        sa.Column('pre_action_metrics', _json(), nullable=True),
        sa.Column('post_action_metrics', _json(), nullable=True),
        sa.Column('recovery_effectiveness_score', sa.Float(), nullable=True),
        sa.Column('metrics_improvement_percentage', sa.Float(), nullable=True),
        sa.Column('execution_result', _json(), nullable=True),
        sa.Column('execution_duration_ms', sa.Float(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('rollback_action_id', sa.Integer(), nullable=True),
        sa.Column('rollback_reason', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        _created_at(),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['rollback_action_id'], ['recovery_actions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    for col in ('owner_id', 'action_type', 'triggered_by_anomaly_id', 'execution_status'):
        op.create_index(f'ix_recovery_actions_{col}', 'recovery_actions', [col])
    op.create_index('ix_recovery_actions_due', 'recovery_actions', ['execution_status', 'next_retry_at'])

    # ANOMALIES
    op.create_table('anomaly_signals',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('anomaly_type', _enum('anomalytype'), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('severity', _enum('anomalyseverity'), nullable=False),
        sa.Column('computed_severity', _enum('anomalyseverity'), nullable=False),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('source_component_type', sa.String(length=64), nullable=False),
        sa.Column('source_component_name', sa.String(length=128), nullable=False),
        sa.Column('baseline_value', sa.Float(), nullable=True),
        sa.Column('observed_value', sa.Float(), nullable=False),
        sa.Column('deviation_percentage', sa.Float(), nullable=True),
        sa.Column('status', _enum('anomalystatus'), nullable=False),
        sa.Column('detection_method', sa.String(length=64), nullable=False),
        sa.Column('dedup_key', sa.String(length=255), nullable=False),
        sa.Column('metadata', _json(), nullable=True),
        sa.Column('triggered_recovery_action_id', sa.Integer(), nullable=True),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.Column('status_changed_at', sa.DateTime(), nullable=True),
        sa.Column('status_changed_by', sa.String(length=128), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['triggered_recovery_action_id'], ['recovery_actions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('owner_id', 'dedup_key', name='uq_anomaly_dedup'),
    )
    for col in ('owner_id', 'anomaly_type', 'severity', 'status'):
        op.create_index(f'ix_anomaly_signals_{col}', 'anomaly_signals', [col])
    op.create_index('ix_anomaly_signals_owner_detected', 'anomaly_signals', ['owner_id', 'detected_at'])

    # DECISIONS
    op.create_table('decision_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('decision_type', sa.String(length=64), nullable=False),
        sa.Column('trigger_source', sa.String(length=64), nullable=False),
        sa.Column('context_data', _json(), nullable=True),
        sa.Column('confidence_score', sa.Float(), nullable=False),
        sa.Column('risk_level', _enum('risklevel'), nullable=False),
        sa.Column('requires_approval', sa.Boolean(), nullable=False),
        sa.Column('approval_status', _enum('approvalstatus'), nullable=False),
        sa.Column('approved_by', sa.String(length=128), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('recommended_action', _enum('recommendedaction'), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('status', _enum('decisionstatus'), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(length=128), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_decision_events_owner_id', 'decision_events', ['owner_id'])
    op.create_index('ix_decision_events_decision_type', 'decision_events', ['decision_type'])

    op.create_table('decision_factors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('decision_event_id', sa.Integer(), nullable=False),
        sa.Column('factor_name', sa.String(length=128), nullable=False),
        sa.Column('category', sa.String(length=64), nullable=True),
        sa.Column('current_value', sa.Float(), nullable=False),
        sa.Column('baseline_value', sa.Float(), nullable=True),
        sa.Column('threshold_value', sa.Float(), nullable=True),
        sa.Column('weight', sa.Float(), nullable=False),
        sa.Column('normalized_score', sa.Float(), nullable=False),
        sa.Column('weighted_score', sa.Float(), nullable=False),
        sa.Column('deviation_percentage', sa.Float(), nullable=True),
        sa.Column('higher_is_better', sa.Boolean(), nullable=False),
        sa.ForeignKeyConstraint(['decision_event_id'], ['decision_events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_decision_factors_decision_event_id', 'decision_factors', ['decision_event_id'])

    # RECOMMENDATION QUEUE
    op.create_table('recommendation_queue',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('decision_event_id', sa.Integer(), nullable=False),
        sa.Column('recommendation_type', sa.String(length=64), nullable=False),
        sa.Column('action_type', _enum('recommendationactiontype'), nullable=False),
        sa.Column('action_target', sa.String(length=255), nullable=True),
        sa.Column('action_payload', _json(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('urgency', _enum('urgency'), nullable=False),
        sa.Column('approval_status', _enum('approvalstatus'), nullable=False),
        sa.Column('approved_by', sa.String(length=128), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.String(length=512), nullable=True),
        sa.Column('execution_status', _enum('queuestatus'), nullable=False),
        sa.Column('execution_mode', _enum('executionmode'), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('execution_attempts', sa.Integer(), nullable=False),
        sa.Column('execution_result', _json(), nullable=True),
        sa.Column('latency_ms', sa.Float(), nullable=True),
        sa.Column('executed_at', sa.DateTime(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(['decision_event_id'], ['decision_events.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_recommendation_queue_owner_id', 'recommendation_queue', ['owner_id'])
    op.create_index('ix_recommendation_queue_decision_event_id', 'recommendation_queue', ['decision_event_id'])
    op.create_index('ix_recommendation_queue_approval_status', 'recommendation_queue', ['approval_status'])
    op.create_index('ix_recommendation_queue_due', 'recommendation_queue', ['execution_status', 'scheduled_for'])

    # AUDIT
    op.create_table('audit_log_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('event_category', sa.String(length=64), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('decision_impact', sa.String(length=32), nullable=True),
        sa.Column('anomaly_detected', sa.Boolean(), nullable=False),
        sa.Column('triggered_by', sa.String(length=128), nullable=True),
        sa.Column('actor_type', _enum('actortype'), nullable=False),
        sa.Column('subject_type', sa.String(length=64), nullable=True),
        sa.Column('subject_id', sa.Integer(), nullable=True),
        sa.Column('previous_state', sa.String(length=64), nullable=True),
        sa.Column('new_state', sa.String(length=64), nullable=True),
        sa.Column('metadata', _json(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_log_entries_event_type', 'audit_log_entries', ['event_type'])
    op.create_index('ix_audit_log_entries_event_category', 'audit_log_entries', ['event_category'])
    op.create_index('ix_audit_owner_created', 'audit_log_entries', ['owner_id', 'created_at'])

    # SELF TESTS
    op.create_table('selftest_results',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(length=64), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('test_name', sa.String(length=128), nullable=False),
        sa.Column('test_category', sa.String(length=64), nullable=False),
        sa.Column('test_type', sa.String(length=64), nullable=False),
        sa.Column('execution_status', sa.String(length=32), nullable=False),
        sa.Column('test_result', _enum('selftestoutcome'), nullable=False),
        sa.Column('health_score', sa.Float(), nullable=False),
        sa.Column('reliability_score', sa.Float(), nullable=False),
        sa.Column('performance_score', sa.Float(), nullable=False),
        sa.Column('duration_ms', sa.Float(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_selftest_results_owner_id', 'selftest_results', ['owner_id'])
    op.create_index('ix_selftest_results_run_id', 'selftest_results', ['run_id'])

    # --- Audit immutability at the storage layer ---
    if is_pg:
        op.execute("""
            CREATE OR REPLACE FUNCTION audit_log_entries_immutable() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'audit_log_entries is append-only (% refused)', TG_OP;
            END;
            $$ LANGUAGE plpgsql;
        """)
        op.execute("""
            CREATE TRIGGER trg_audit_log_entries_immutable
            BEFORE UPDATE OR DELETE ON audit_log_entries
            FOR EACH ROW EXECUTE FUNCTION audit_log_entries_immutable();
        """)


def downgrade() -> None:
    is_pg = op.get_bind().dialect.name == 'postgresql'
    if is_pg:
        op.execute("DROP TRIGGER IF EXISTS trg_audit_log_entries_immutable ON audit_log_entries;")
        op.execute("DROP FUNCTION IF EXISTS audit_log_entries_immutable();")
    for table in (
        'selftest_results', 'audit_log_entries', 'recommendation_queue', 'decision_factors',
        'decision_events', 'anomaly_signals', 'recovery_actions', 'alert_history',
        'metric_observations', 'metric_thresholds', 'health_windows', 'health_samples', 'operators',
    ):
        op.drop_table(table)
    if is_pg:
        for enum_name in ENUMS:
            op.execute(f"DROP TYPE IF EXISTS {enum_name};")
