from typing import Optional, List, Dict, Any

from pydantic import BaseModel, ConfigDict, Field


SCRIPT_MARKER = "/* eval */"


# =========================
# QUERY
# =========================
class QueryDefinition(BaseModel):
    path: str
    text: str
    scripting: bool = False

    model_config = ConfigDict(frozen=True)

    @classmethod
    def load(cls, path: str, text: str) -> "QueryDefinition":
        scripting = path.endswith(".py") or text.startswith(SCRIPT_MARKER)
        return cls(path=path, text=text, scripting=scripting)


class ParsedQuery(BaseModel):
    text: str
    parameters: List[Any] = Field(default_factory=list)


class ScriptResult:
    """A scripted query's return value that is not SQL; delivered as-is."""

    def __init__(self, value: Any):
        self.value = value

    def __repr__(self) -> str:
        return f"ScriptResult({self.value!r})"


class ResultSet(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    rows_affected: int = 0
    last_insert_id: Optional[int] = None


# =========================
# MIGRATION
# =========================
class SchemaVersionRecord(BaseModel):
    name: str
    version: int = Field(ge=0)


# =========================
# API
# =========================
class DataSourceResponse(BaseModel):
    name: str
    queries_path: str
    is_default: bool


class VersionResponse(BaseModel):
    name: str
    version: Optional[int] = None


class UpgradeResponse(BaseModel):
    name: str
    previous_version: Optional[int] = None
    version: Optional[int] = None
