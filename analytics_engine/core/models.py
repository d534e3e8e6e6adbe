from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    String,
    Boolean,
    TIMESTAMP,
    Text,
    JSON,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from analytics_engine.core.database import Base


# =========================
# Data source
# =========================
class ChartDataSource(Base):
    """
    One queryable analytics table:
    - where it lives (schema + table)
    - which columns carry tenant / sub-entity ownership
    """

    __tablename__ = "chart_data_sources"

    data_source_id = Column(Integer, primary_key=True, autoincrement=True)

    name = Column(String(100), nullable=False)
    description = Column(Text)
    schema_name = Column(String(50), nullable=False)
    table_name = Column(String(100), nullable=False)
    is_active = Column(Boolean, nullable=False, server_default="true")

    tenant_field = Column(String(100), nullable=False, server_default="practice_uid")
    sub_entity_field = Column(String(100), nullable=False, server_default="provider_uid")
    measure_field = Column(String(100), nullable=False, server_default="measure")

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())

    # Relationships
    columns = relationship(
        "ChartDataSourceColumn",
        back_populates="data_source",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ChartDataSourceColumn.sort_order",
    )


# =========================
# Column definition
# =========================
class ChartDataSourceColumn(Base):
    __tablename__ = "chart_data_source_columns"

    column_id = Column(Integer, primary_key=True, autoincrement=True)

    data_source_id = Column(
        Integer,
        ForeignKey("chart_data_sources.data_source_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    column_name = Column(String(100), nullable=False)
    display_name = Column(String(100))
    data_type = Column(String(50), nullable=False, server_default="text")
    sort_order = Column(Integer, nullable=False, server_default="0")
    is_active = Column(Boolean, nullable=False, server_default="true")

    # Roles the query builder resolves column mappings from
    is_filterable = Column(Boolean, nullable=False, server_default="true")
    is_measure = Column(Boolean, nullable=False, server_default="false")
    is_measure_type = Column(Boolean, nullable=False, server_default="false")
    is_date_field = Column(Boolean, nullable=False, server_default="false")
    is_time_period = Column(Boolean, nullable=False, server_default="false")

    # Optional per-column operator whitelist, e.g. ["eq", "in"]
    allowed_operators = Column(JSON, nullable=True)

    # Relationships
    data_source = relationship("ChartDataSource", back_populates="columns")
