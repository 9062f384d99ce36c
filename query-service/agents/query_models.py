"""
Typed representation of the query an LLM generates.

The LLM output is untrusted, so each operation kind is its own model with
the ``query`` fields it requires. Validation happens through a discriminated
union on ``operation``; once validated, a query is frozen.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

COLLECTION_NAME_PATTERN = r"^[A-Za-z0-9_.-]+$"

OPERATIONS = (
    "find",
    "aggregate",
    "insertOne",
    "insertMany",
    "updateOne",
    "updateMany",
    "deleteOne",
    "deleteMany",
    "countDocuments",
)
OperationKind = Literal[
    "find",
    "aggregate",
    "insertOne",
    "insertMany",
    "updateOne",
    "updateMany",
    "deleteOne",
    "deleteMany",
    "countDocuments",
]

# Operations that may rewrite or remove many documents at once
DANGEROUS_OPERATIONS = {"updateMany", "deleteMany"}

# Read-only operations whose results may be cached
CACHEABLE_OPERATIONS = {"find", "aggregate", "countDocuments"}

SortSpec = Union[Dict[str, Any], List[Any]]


class _QueryBody(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class FindQuery(_QueryBody):
    filter: Dict[str, Any] = Field(default_factory=dict)
    projection: Optional[Dict[str, Any]] = None
    sort: Optional[SortSpec] = None
    skip: Optional[int] = Field(None, ge=0)
    limit: Optional[int] = Field(None, ge=0)
    options: Optional[Dict[str, Any]] = None


class InsertOneQuery(_QueryBody):
    document: Dict[str, Any]


class InsertManyQuery(_QueryBody):
    documents: List[Dict[str, Any]] = Field(..., min_length=1)


class UpdateQuery(_QueryBody):
    filter: Dict[str, Any]
    # Either an update document or an update pipeline
    update: Union[Dict[str, Any], List[Dict[str, Any]]]


class DeleteQuery(_QueryBody):
    filter: Dict[str, Any]


class CountQuery(_QueryBody):
    filter: Dict[str, Any] = Field(default_factory=dict)


class _Operation(BaseModel):
    model_config = ConfigDict(frozen=True)

    collection: str = Field(..., pattern=COLLECTION_NAME_PATTERN)
    options: Optional[Dict[str, Any]] = None


class FindOperation(_Operation):
    operation: Literal["find"]
    query: FindQuery


class AggregateOperation(_Operation):
    operation: Literal["aggregate"]
    query: Union[List[Dict[str, Any]], Dict[str, Any]]

    @property
    def pipeline(self) -> List[Dict[str, Any]]:
        """Pipeline stages, accepting an array, ``{pipeline: [...]}`` or a single stage."""
        if isinstance(self.query, list):
            return list(self.query)
        if isinstance(self.query.get("pipeline"), list):
            return list(self.query["pipeline"])
        return [self.query]


class InsertOneOperation(_Operation):
    operation: Literal["insertOne"]
    query: InsertOneQuery


class InsertManyOperation(_Operation):
    operation: Literal["insertMany"]
    query: InsertManyQuery


class UpdateOneOperation(_Operation):
    operation: Literal["updateOne"]
    query: UpdateQuery


class UpdateManyOperation(_Operation):
    operation: Literal["updateMany"]
    query: UpdateQuery


class DeleteOneOperation(_Operation):
    operation: Literal["deleteOne"]
    query: DeleteQuery


class DeleteManyOperation(_Operation):
    operation: Literal["deleteMany"]
    query: DeleteQuery


class CountDocumentsOperation(_Operation):
    operation: Literal["countDocuments"]
    query: CountQuery = Field(default_factory=CountQuery)


GeneratedQuery = Annotated[
    Union[
        FindOperation,
        AggregateOperation,
        InsertOneOperation,
        InsertManyOperation,
        UpdateOneOperation,
        UpdateManyOperation,
        DeleteOneOperation,
        DeleteManyOperation,
        CountDocumentsOperation,
    ],
    Field(discriminator="operation"),
]

generated_query_adapter = TypeAdapter(GeneratedQuery)


class QueryEnvelope(BaseModel):
    """Outer shape shared by every operation, checked before the safety gate."""

    operation: OperationKind
    collection: str = Field(..., pattern=COLLECTION_NAME_PATTERN)
    query: Any
    options: Optional[Dict[str, Any]] = None


def dump_query(query: GeneratedQuery) -> Dict[str, Any]:
    """Serialize a validated query for the response body."""
    return query.model_dump(mode="json", exclude_none=True)
