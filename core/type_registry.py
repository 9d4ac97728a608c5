from enum import Enum
from typing import Dict, Tuple, Optional

class TypeFamily(Enum):
    # Numeric
    INTEGER = "INTEGER"
    DECIMAL = "DECIMAL"  # With precision/scale
    FLOAT = "FLOAT"
    BOOLEAN = "BOOLEAN"

    # String
    CHAR = "CHAR"  # Fixed length
    VARCHAR = "VARCHAR"  # Variable length, MAX allowed
    TEXT = "TEXT"  # Legacy unbounded, no length in DDL

    # Binary
    BINARY = "BINARY"
    VARBINARY = "VARBINARY"
    IMAGE = "IMAGE"

    # Date/Time
    DATE = "DATE"
    TIME = "TIME"
    DATETIME = "DATETIME"
    DATETIME_TZ = "DATETIMEOFFSET"

    # Special
    UUID = "UUID"
    XML = "XML"
    VARIANT = "VARIANT"
    ROWVERSION = "ROWVERSION"  # Server maintained, never copied
    SPATIAL = "SPATIAL"

    # Fallback
    UNKNOWN = "UNKNOWN"

class TypeRegistry:
    # SQL Server type -> (family, takes_length, supports_max)
    MSSQL_TYPES: Dict[str, Tuple[TypeFamily, bool, bool]] = {
        'tinyint': (TypeFamily.INTEGER, False, False),
        'smallint': (TypeFamily.INTEGER, False, False),
        'int': (TypeFamily.INTEGER, False, False),
        'bigint': (TypeFamily.INTEGER, False, False),
        'bit': (TypeFamily.BOOLEAN, False, False),
        'decimal': (TypeFamily.DECIMAL, False, False),
        'numeric': (TypeFamily.DECIMAL, False, False),
        'money': (TypeFamily.DECIMAL, False, False),
        'smallmoney': (TypeFamily.DECIMAL, False, False),
        'float': (TypeFamily.FLOAT, False, False),
        'real': (TypeFamily.FLOAT, False, False),
        'date': (TypeFamily.DATE, False, False),
        'time': (TypeFamily.TIME, False, False),
        'datetime': (TypeFamily.DATETIME, False, False),
        'datetime2': (TypeFamily.DATETIME, False, False),
        'smalldatetime': (TypeFamily.DATETIME, False, False),
        'datetimeoffset': (TypeFamily.DATETIME_TZ, False, False),
        'char': (TypeFamily.CHAR, True, False),
        'nchar': (TypeFamily.CHAR, True, False),
        'varchar': (TypeFamily.VARCHAR, True, True),
        'nvarchar': (TypeFamily.VARCHAR, True, True),
        'text': (TypeFamily.TEXT, False, False),
        'ntext': (TypeFamily.TEXT, False, False),
        'binary': (TypeFamily.BINARY, True, False),
        'varbinary': (TypeFamily.VARBINARY, True, True),
        'image': (TypeFamily.IMAGE, False, False),
        'uniqueidentifier': (TypeFamily.UUID, False, False),
        'xml': (TypeFamily.XML, False, False),
        'sql_variant': (TypeFamily.VARIANT, False, False),
        'hierarchyid': (TypeFamily.VARIANT, False, False),
        'timestamp': (TypeFamily.ROWVERSION, False, False),
        'rowversion': (TypeFamily.ROWVERSION, False, False),
        'geography': (TypeFamily.SPATIAL, False, False),
        'geometry': (TypeFamily.SPATIAL, False, False),
    }

    # Length used when a variable-length text column arrives without one
    DEFAULT_VARCHAR_LENGTH = 255

    @classmethod
    def lookup(cls, type_name: Optional[str]) -> Tuple[TypeFamily, bool, bool]:
        return cls.MSSQL_TYPES.get((type_name or '').lower().strip(), (TypeFamily.UNKNOWN, False, False))

    @classmethod
    def family(cls, type_name: Optional[str]) -> TypeFamily:
        return cls.lookup(type_name)[0]

    @classmethod
    def takes_length(cls, type_name: str) -> bool:
        return cls.lookup(type_name)[1]

    @classmethod
    def supports_max(cls, type_name: str) -> bool:
        return cls.lookup(type_name)[2]

    @classmethod
    def takes_precision_scale(cls, type_name: str) -> bool:
        return (type_name or '').lower() in ('decimal', 'numeric')

    @classmethod
    def is_datetime(cls, type_name: str) -> bool:
        """datetime, datetime2 and smalldatetime"""
        return cls.family(type_name) == TypeFamily.DATETIME

    @classmethod
    def is_temporal(cls, type_name: str) -> bool:
        return cls.family(type_name) in (TypeFamily.DATE, TypeFamily.TIME,
                                         TypeFamily.DATETIME, TypeFamily.DATETIME_TZ)

    @classmethod
    def is_binary(cls, type_name: str) -> bool:
        return cls.family(type_name) in (TypeFamily.BINARY, TypeFamily.VARBINARY, TypeFamily.IMAGE)

    @classmethod
    def is_versioning(cls, type_name: str) -> bool:
        return cls.family(type_name) == TypeFamily.ROWVERSION

    @classmethod
    def is_floating(cls, type_name: str) -> bool:
        return cls.family(type_name) == TypeFamily.FLOAT

    @classmethod
    def is_checksummable(cls, type_name: str) -> bool:
        # spatial types have no CAST to NVARCHAR
        return cls.family(type_name) not in (TypeFamily.ROWVERSION, TypeFamily.SPATIAL)
