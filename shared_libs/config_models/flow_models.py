# shared_libs/config_models/flow_models.py

import enum
from typing import Annotated, List, Literal, Optional, Union, Self
from pydantic import BaseModel, Field, model_validator


class ComparatorType(str, enum.Enum):
    EQ = "=="
    NE = "!="
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="


class VariableType(str, enum.Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"


class VariableScope(str, enum.Enum):
    LOCAL = "local"
    GLOBAL = "global"


class OnFailure(str, enum.Enum):
    ABORT = "abort"
    CONTINUE = "continue"
    GOTO = "goto"


class LogLevel(str, enum.Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ActuatorAction(str, enum.Enum):
    ON = "ON"
    OFF = "OFF"
    PULSE_ON = "PULSE_ON"
    PULSE_OFF = "PULSE_OFF"
    DOSE = "DOSE"


class AmountUnit(str, enum.Enum):
    ML = "ml"
    L = "l"
    GAL = "gal"
    DOSES = "doses"


class LoopMode(str, enum.Enum):
    COUNT = "COUNT"
    WHILE = "WHILE"


class ControlType(str, enum.Enum):
    LABEL = "LABEL"
    GOTO = "GOTO"
    LOOP_BACK = "LOOP_BACK"
    LOOP_BREAK = "LOOP_BREAK"


class EdgeLabel(str, enum.Enum):
    TRUE = "true"
    FALSE = "false"
    BODY = "body"


# Literal operands may be numbers, booleans or strings; "{{var}}" strings are variable references.
Operand = Union[bool, int, float, str]


class VariableDefinition(BaseModel):
    id: str = Field(..., description="Identifier referenced as {{id}} inside block parameters.")
    name: Optional[str] = Field(None)
    type: VariableType = Field(VariableType.NUMBER)
    scope: VariableScope = Field(VariableScope.LOCAL, description="Globals are caller-supplied inputs, locals hold run-time values.")
    default: Optional[Operand] = Field(None)
    tolerance: Optional[float] = Field(None, ge=0, description="Comparison tolerance; only meaningful on global numeric variables.")
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_tolerance_scope(self) -> Self:
        if self.tolerance is not None and self.scope != VariableScope.GLOBAL:
            raise ValueError(f"Variable '{self.id}': tolerance is only allowed on global variables")
        return self


class ErrorPolicy(BaseModel):
    """Error-handling overlay accepted by every block."""
    retry_count: int = Field(0, ge=0)
    retry_delay_ms: int = Field(0, ge=0)
    on_failure: OnFailure = Field(OnFailure.ABORT)
    recovery_block: Optional[str] = Field(None, description="Block jumped to when on_failure is 'goto'.")
    error_notification: bool = Field(False, description="Emit an error-level event when the block finally fails.")
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_recovery(self) -> Self:
        if self.on_failure == OnFailure.GOTO and not self.recovery_block:
            raise ValueError("on_failure 'goto' requires recovery_block")
        return self


class ConditionSpec(BaseModel):
    variable: str = Field(..., description="Left operand: a variable id or a {{var}} reference.")
    operator: ComparatorType = Field(...)
    value: Operand = Field(..., description="Right operand: a literal or a {{var}} reference.")
    model_config = {"extra": "forbid"}


# --- Blocks ---

class BlockBase(BaseModel):
    id: str = Field(...)
    name: Optional[str] = Field(None)
    next: Optional[str] = Field(None, description="Default successor block id.")
    on_error: ErrorPolicy = Field(default_factory=ErrorPolicy)
    model_config = {"extra": "forbid"}


class StartBlock(BlockBase):
    type: Literal["START"] = "START"


class EndBlock(BlockBase):
    type: Literal["END"] = "END"

    @model_validator(mode='after')
    def check_terminal(self) -> Self:
        if self.next is not None:
            raise ValueError(f"END block '{self.id}' cannot declare a successor")
        return self


class LogParams(BaseModel):
    message: str = Field(..., description="Message text; may contain {{var}} substitutions.")
    level: LogLevel = Field(LogLevel.INFO)
    model_config = {"extra": "forbid"}


class LogBlock(BlockBase):
    type: Literal["LOG"] = "LOG"
    params: LogParams


class WaitParams(BaseModel):
    duration: Union[int, float, str] = Field(..., description="Milliseconds, literal or {{var}}.")
    model_config = {"extra": "forbid"}


class WaitBlock(BlockBase):
    type: Literal["WAIT"] = "WAIT"
    params: WaitParams


class SensorReadParams(BaseModel):
    device_id: Optional[str] = Field(None, description="Sensor to read; inherited when the block mirrors another.")
    variable: str = Field(..., description="Local variable that receives the vetted value.")
    sample_count: Optional[int] = Field(None, ge=1, description="Overrides the device's sample_count.")
    sample_delay_ms: Optional[int] = Field(None, ge=0, description="Overrides the device's sample_delay_ms.")
    model_config = {"extra": "forbid"}


class SensorReadBlock(BlockBase):
    type: Literal["SENSOR_READ"] = "SENSOR_READ"
    params: SensorReadParams
    mirror_of: Optional[str] = Field(None, description="SENSOR_READ block whose device and sampling settings are copied at load.")

    @model_validator(mode='after')
    def check_device_or_mirror(self) -> Self:
        if self.mirror_of is None and not self.params.device_id:
            raise ValueError(f"SENSOR_READ block '{self.id}' needs params.device_id or mirror_of")
        return self


class ActuatorSetParams(BaseModel):
    device_id: str = Field(...)
    action: ActuatorAction = Field(...)
    duration_ms: Optional[Union[int, float, str]] = Field(None, description="Pulse length for PULSE_ON/PULSE_OFF.")
    amount: Optional[Union[int, float, str]] = Field(None, description="Requested quantity for DOSE.")
    amount_unit: AmountUnit = Field(AmountUnit.ML)
    revert_on_stop: bool = Field(True, description="Turn the actuator off if the session is stopped while it is on.")
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_action_params(self) -> Self:
        if self.action in (ActuatorAction.PULSE_ON, ActuatorAction.PULSE_OFF) and self.duration_ms is None:
            raise ValueError(f"{self.action.value} requires duration_ms")
        if self.action == ActuatorAction.DOSE and self.amount is None:
            raise ValueError("DOSE requires amount")
        return self


class ActuatorSetBlock(BlockBase):
    type: Literal["ACTUATOR_SET"] = "ACTUATOR_SET"
    params: ActuatorSetParams


class ConditionBlock(BlockBase):
    type: Literal["CONDITION"] = "CONDITION"
    params: ConditionSpec


class LoopParams(BaseModel):
    mode: LoopMode = Field(...)
    count: Optional[Union[int, str]] = Field(None, description="Iterations for COUNT mode, literal or {{var}}.")
    condition: Optional[ConditionSpec] = Field(None, description="Re-tested before every WHILE iteration.")
    max_iterations: int = Field(100, ge=1, description="Runaway guard for WHILE mode.")
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_mode(self) -> Self:
        if self.mode == LoopMode.COUNT and self.count is None:
            raise ValueError("COUNT loop requires count")
        if self.mode == LoopMode.WHILE and self.condition is None:
            raise ValueError("WHILE loop requires condition")
        return self


class LoopBlock(BlockBase):
    type: Literal["LOOP"] = "LOOP"
    params: LoopParams
    body: Optional[str] = Field(None, description="First block of the loop body; alternatively a 'body' edge.")


class FlowControlParams(BaseModel):
    control: ControlType = Field(...)
    label: Optional[str] = Field(None, description="Anchor name for LABEL blocks.")
    target: Optional[str] = Field(None, description="Block id or label for GOTO, LOOP block id for LOOP_BACK.")
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_control(self) -> Self:
        if self.control == ControlType.LABEL and not self.label:
            raise ValueError("LABEL requires label")
        if self.control in (ControlType.GOTO, ControlType.LOOP_BACK) and not self.target:
            raise ValueError(f"{self.control.value} requires target")
        return self


class FlowControlBlock(BlockBase):
    type: Literal["FLOW_CONTROL"] = "FLOW_CONTROL"
    params: FlowControlParams


Block = Annotated[
    Union[
        StartBlock,
        EndBlock,
        LogBlock,
        WaitBlock,
        SensorReadBlock,
        ActuatorSetBlock,
        ConditionBlock,
        LoopBlock,
        FlowControlBlock,
    ],
    Field(discriminator="type"),
]


class FlowEdge(BaseModel):
    source: str = Field(...)
    target: str = Field(...)
    label: Optional[EdgeLabel] = Field(None, description="None for the default successor.")
    model_config = {"extra": "forbid"}


class FlowDefinition(BaseModel):
    id: str = Field(...)
    name: Optional[str] = Field(None)
    description: Optional[str] = Field(None)
    blocks: List[Block] = Field(..., min_length=1)
    edges: List[FlowEdge] = Field(default_factory=list)
    variables: List[VariableDefinition] = Field(default_factory=list)
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_unique_ids(self) -> Self:
        block_ids = [b.id for b in self.blocks]
        duplicates = {b for b in block_ids if block_ids.count(b) > 1}
        if duplicates:
            raise ValueError(f"Flow '{self.id}' repeats block ids: {sorted(duplicates)}")
        var_ids = [v.id for v in self.variables]
        duplicates = {v for v in var_ids if var_ids.count(v) > 1}
        if duplicates:
            raise ValueError(f"Flow '{self.id}' repeats variable ids: {sorted(duplicates)}")
        return self
