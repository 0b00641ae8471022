"""Schema-level options."""

from pydantic import BaseModel, ConfigDict, Field


class SchemaOptions(BaseModel):
    """
    Options of a `Schema`.

    Keys are accepted in snake_case or in their camelCase aliases
    (``dataSources``, ``autoTrim``...). Unknown keys are kept so plugins can
    stash their own settings.

    Parameters
    ----------
    data_sources : list[str], default ["body", "query", "params"]
        Names of the input sources merged by `Schema.bind`, in order.
    auto_trim : bool, default False
        Add a trim setter to every String field.
    auto_locals : bool, default True
        Hint for request adapters to publish the exported form.
    pass_through : bool, default False
        Hint for request adapters to keep going on invalid input.
    errors : dict[str, str]
        Message templates keyed by validator tag, rendered with
        ``template.format(data=<field export>)``.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        validate_assignment=True,
        extra="allow",
    )

    data_sources: list[str] = Field(
        default_factory=lambda: ["body", "query", "params"], alias="dataSources"
    )
    auto_trim: bool = Field(default=False, alias="autoTrim")
    auto_locals: bool = Field(default=True, alias="autoLocals")
    pass_through: bool = Field(default=False, alias="passThrough")
    errors: dict[str, str] = Field(default_factory=dict)
