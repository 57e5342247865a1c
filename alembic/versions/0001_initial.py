from __future__ import annotations
from alembic import op
import sqlalchemy as sa

revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _rollup_columns():
    return [
        sa.Column('view_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('avg_time_spent', sa.Float, nullable=False, server_default='0'),
        sa.Column('avg_reading_rate', sa.Float, nullable=False, server_default='0'),
        sa.Column('calculation_period', sa.DateTime, nullable=False, index=True),
    ]


def upgrade():
    op.create_table(
        'brand',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('name', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('host', sa.String(255)),
        sa.Column('page_view_threshold', sa.Integer, nullable=False, server_default='5'),
    )
    op.create_table(
        'page',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('type', sa.String(32), nullable=False, index=True),
        sa.Column('language', sa.String(16), nullable=False),
        sa.Column('publication_date', sa.DateTime, nullable=False, index=True),
        sa.Column('modification_date', sa.DateTime),
        sa.Column('title', sa.Text, nullable=False, server_default=''),
        sa.Column('description', sa.Text, nullable=False, server_default=''),
        sa.Column('content', sa.Text, nullable=False, server_default=''),
        sa.Column('section', sa.String(128), nullable=False, server_default=''),
        sa.Column('sub_section', sa.String(128)),
        sa.Column('image', sa.String(2048)),
        sa.Column('is_paid', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('content_vector', sa.JSON),
        sa.Column('updated_at', sa.DateTime, nullable=False, index=True),
        sa.UniqueConstraint('brand', 'url', name='uq_page_brand_url'),
    )
    op.create_index('ix_page_brand_type_pub', 'page', ['brand', 'type', 'publication_date'])
    op.create_table(
        'user',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('lead_uuid', sa.String(64), nullable=False),
        sa.Column('user_id', sa.String(128), nullable=False, server_default=''),
        sa.Column('email', sa.String(320), nullable=False, server_default=''),
        sa.Column('first_name', sa.String(128), nullable=False, server_default=''),
        sa.Column('last_name', sa.String(128), nullable=False, server_default=''),
        sa.Column('is_subscriber', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('updated_at', sa.DateTime, nullable=False, index=True),
        sa.UniqueConstraint('brand', 'lead_uuid', name='uq_user_brand_lead'),
    )

    op.create_table(
        'article_metrics',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('url', sa.String(2048), nullable=False),
        *_rollup_columns(),
        sa.UniqueConstraint('brand', 'url', 'calculation_period', name='uq_article_metrics_key'),
    )
    op.create_table(
        'lead_engagement_metrics',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('lead_uuid', sa.String(64), nullable=False, index=True),
        *_rollup_columns(),
        sa.UniqueConstraint('brand', 'lead_uuid', 'calculation_period', name='uq_lead_engagement_key'),
    )
    op.create_table(
        'lead_section_article_count',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('lead_uuid', sa.String(64), nullable=False, index=True),
        sa.Column('section', sa.String(128), nullable=False),
        sa.Column('article_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('avg_time_spent', sa.Float, nullable=False, server_default='0'),
        sa.Column('avg_reading_rate', sa.Float, nullable=False, server_default='0'),
        sa.Column('calculation_period', sa.DateTime, nullable=False, index=True),
        sa.UniqueConstraint('brand', 'lead_uuid', 'section', 'calculation_period', name='uq_lead_section_key'),
    )
    op.create_table(
        'lead_article_view_count',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('lead_uuid', sa.String(64), nullable=False, index=True),
        sa.Column('view_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('calculation_period', sa.DateTime, nullable=False, index=True),
        sa.UniqueConstraint('brand', 'lead_uuid', 'calculation_period', name='uq_lead_article_view_key'),
    )
    op.create_table(
        'lead_read_articles',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('lead_uuid', sa.String(64), nullable=False, index=True),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('first_read_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('brand', 'url', 'lead_uuid', name='uq_lead_read_key'),
    )
    op.create_table(
        'top_articles',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('section', sa.String(128), nullable=False, server_default=''),
        sa.Column('sub_section', sa.String(128), nullable=False, server_default=''),
        sa.Column('recency_weight', sa.Float, nullable=False, server_default='0'),
        *_rollup_columns(),
        sa.UniqueConstraint('brand', 'url', 'section', 'sub_section', 'calculation_period', name='uq_top_articles_key'),
    )
    op.create_table(
        'top_next_articles',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('next_url', sa.String(2048), nullable=False),
        *_rollup_columns(),
        sa.UniqueConstraint('brand', 'url', 'next_url', 'calculation_period', name='uq_top_next_key'),
    )
    op.create_table(
        'content_based_articles',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('article_url_1', sa.String(2048), nullable=False),
        sa.Column('article_url_2', sa.String(2048), nullable=False),
        sa.Column('similarity_score', sa.Float, nullable=False),
        sa.Column('calculated_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('brand', 'article_url_1', 'article_url_2', name='uq_content_based_key'),
    )
    op.create_table(
        'article_section',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('brand', sa.String(64), nullable=False, index=True),
        sa.Column('section', sa.String(128), nullable=False),
        sa.Column('sub_section', sa.String(128), nullable=False, server_default=''),
        sa.UniqueConstraint('brand', 'section', 'sub_section', name='uq_article_section_key'),
    )


def downgrade():
    for name in (
        'article_section', 'content_based_articles', 'top_next_articles', 'top_articles',
        'lead_read_articles', 'lead_article_view_count', 'lead_section_article_count',
        'lead_engagement_metrics', 'article_metrics',
    ):
        op.drop_table(name)
    op.drop_index('ix_page_brand_type_pub', table_name='page')
    op.drop_table('user')
    op.drop_table('page')
    op.drop_table('brand')
