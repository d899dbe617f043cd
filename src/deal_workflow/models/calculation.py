"""Calculated-field inputs and per-field calculation results."""

from pydantic import BaseModel, ConfigDict, Field


class CalculatedField(BaseModel):
    """A field whose value is derived from other fields by a formula."""

    model_config = ConfigDict(frozen=True)

    field_key: str
    calculation_formula: str
    calculation_dependencies: list[str] = Field(default_factory=list)
    data_type: str = 'date'


class CalculationResult(BaseModel):
    """
    Outcome of evaluating one calculated field.

    computed=False with no error means the field is waiting on a
    dependency; computed=False with an error means the inputs were present
    but unusable.
    """

    model_config = ConfigDict(frozen=True)

    field_key: str
    value: str | None = None
    computed: bool = False
    error: str | None = None

    @property
    def is_waiting(self) -> bool:
        return not self.computed and self.error is None
