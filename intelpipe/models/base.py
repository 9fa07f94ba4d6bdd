from sqlalchemy import JSON, BigInteger, Integer
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on PostgreSQL, plain JSON elsewhere. Python None is stored as SQL NULL.
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY columns
SequenceType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass
