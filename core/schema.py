from dataclasses import dataclass, field, asdict
from typing import List, Dict, Any, Optional

MAX_LENGTH = -1  # CHARACTER_MAXIMUM_LENGTH reported for (MAX) columns

@dataclass(frozen=True, order=True)
class TableIdentity:
    """Schema-qualified table name, identical on both sides of a copy"""
    schema: str
    name: str

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def __str__(self) -> str:
        return self.qualified_name

    @classmethod
    def parse(cls, value: str, default_schema: str = "dbo") -> 'TableIdentity':
        """Build from 'schema.table' or a bare 'table'"""
        if '.' in value:
            schema, name = value.split('.', 1)
            return cls(schema, name)
        return cls(default_schema, value)

@dataclass
class ColumnDescriptor:
    """Column definition as read from INFORMATION_SCHEMA.COLUMNS"""
    name: str
    data_type: str
    char_length: Optional[int] = None
    numeric_precision: Optional[int] = None
    numeric_scale: Optional[int] = None
    nullable: bool = True
    default: Optional[str] = None
    ordinal: int = 0
    is_identity: bool = False

    @property
    def type_name(self) -> str:
        return (self.data_type or "").lower()

    @property
    def is_max(self) -> bool:
        return self.char_length == MAX_LENGTH

    def structurally_equals(self, other: 'ColumnDescriptor') -> bool:
        # ordinal position is deliberately not compared
        return (self.type_name == other.type_name
                and self.nullable == other.nullable
                and self.char_length == other.char_length
                and self.numeric_precision == other.numeric_precision
                and self.numeric_scale == other.numeric_scale)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ColumnDescriptor':
        return cls(
            name=data['name'],
            data_type=data['data_type'],
            char_length=data.get('char_length'),
            numeric_precision=data.get('numeric_precision'),
            numeric_scale=data.get('numeric_scale'),
            nullable=data.get('nullable', True),
            default=data.get('default'),
            ordinal=data.get('ordinal', 0),
            is_identity=data.get('is_identity', False),
        )

@dataclass
class ForeignKeyRef:
    """One column pair of a foreign key constraint"""
    constraint_name: str
    column: str
    referenced_table: TableIdentity
    referenced_column: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'constraint_name': self.constraint_name,
            'column': self.column,
            'referenced_schema': self.referenced_table.schema,
            'referenced_table': self.referenced_table.name,
            'referenced_column': self.referenced_column,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ForeignKeyRef':
        return cls(
            constraint_name=data['constraint_name'],
            column=data['column'],
            referenced_table=TableIdentity(data.get('referenced_schema', 'dbo'), data['referenced_table']),
            referenced_column=data['referenced_column'],
        )

@dataclass
class TableSchema:
    """Table definition read fresh from one side of the copy"""
    table: TableIdentity
    columns: List[ColumnDescriptor]
    primary_key: List[str] = field(default_factory=list)
    foreign_keys: List[ForeignKeyRef] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    def get_column(self, name: str) -> Optional[ColumnDescriptor]:
        for column in self.columns:
            if column.name == name:
                return column
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema': self.table.schema,
            'name': self.table.name,
            'columns': [c.to_dict() for c in self.columns],
            'primary_keys': list(self.primary_key),
            'foreign_keys': [fk.to_dict() for fk in self.foreign_keys],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableSchema':
        return cls(
            table=TableIdentity(data.get('schema', 'dbo'), data['name']),
            columns=[ColumnDescriptor.from_dict(c) for c in data.get('columns', [])],
            primary_key=list(data.get('primary_keys', [])),
            foreign_keys=[ForeignKeyRef.from_dict(fk) for fk in data.get('foreign_keys', [])],
        )

@dataclass
class RoutineDefinition:
    """Function or view; the definition text is copied verbatim"""
    schema: str
    name: str
    kind: str  # FUNCTION or VIEW
    definition: str

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"
