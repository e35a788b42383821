# shared_libs/config_models/catalog_models.py

import enum
from typing import Dict, List, Optional, Union, Self
from pydantic import BaseModel, Field, model_validator


class ParameterType(str, enum.Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"


class PortType(str, enum.Enum):
    DIGITAL = "digital"
    ANALOG = "analog"
    PWM = "pwm"


class ExecutionStrategy(str, enum.Enum):
    SINGLE_COMMAND = "single_command"
    MULTI_STEP = "multi_step"
    ARDUINO_NATIVE = "arduino_native"


class PhysicalType(str, enum.Enum):
    SENSOR = "sensor"
    ACTUATOR = "actuator"


ParameterValue = Union[bool, int, float, str]


# --- Firmware command schemas ---

class CommandParameter(BaseModel):
    name: str = Field(..., description="Parameter name as sent on the wire (e.g. 'pin', 'triggerPin').")
    type: ParameterType = Field(..., description="Declared value type of the parameter.")
    required: bool = Field(False, description="Whether a compiled command must carry this parameter.")
    default: Optional[ParameterValue] = Field(None, description="Value used when neither template nor device provides one.")
    min: Optional[float] = Field(None, description="Optional lower bound for numeric parameters.")
    max: Optional[float] = Field(None, description="Optional upper bound for numeric parameters.")
    model_config = {"extra": "forbid"}


class CommandDefinition(BaseModel):
    """Schema of a single firmware command understood by the controllers."""
    name: str = Field(..., description="Firmware command name, e.g. 'DHT_READ', 'DIGITAL_WRITE'.")
    display_name: Optional[str] = Field(None, description="Human-readable label.")
    description: Optional[str] = Field(None, description="What the command does on the controller.")
    parameters: List[CommandParameter] = Field(default_factory=list, description="Ordered parameter schema.")
    model_config = {"extra": "forbid"}

    def get_parameter(self, name: str) -> Optional[CommandParameter]:
        return next((p for p in self.parameters if p.name == name), None)

    def has_parameter(self, name: str) -> bool:
        return self.get_parameter(name) is not None

    @model_validator(mode='after')
    def check_unique_parameters(self) -> Self:
        names = [p.name for p in self.parameters]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Command '{self.name}' declares duplicate parameters: {sorted(duplicates)}")
        return self


# --- Device templates ---

class PortRequirement(BaseModel):
    role: str = Field(..., description="Logical role of the pin (data, trigger, echo, control, rx, tx, power).")
    type: PortType = Field(..., description="Kind of controller port the role needs.")
    required: bool = Field(True, description="Whether the device is unusable without this role bound.")
    default_pin: Optional[str] = Field(None, description="Port id used when the device does not bind this role explicitly.")
    description: Optional[str] = Field(None)
    model_config = {"extra": "forbid"}


class CommandStep(BaseModel):
    command: str = Field(..., description="Firmware command executed by this step.")
    parameters: Dict[str, ParameterValue] = Field(default_factory=dict, description="Step-specific parameters.")
    delay_ms: int = Field(0, ge=0, description="Pause after the step before the next one is sent.")
    expect_response: bool = Field(True, description="Whether the step's response carries the reading.")
    model_config = {"extra": "forbid"}


class ResponseMapping(BaseModel):
    """How to pull a numeric value out of a controller response."""
    value_path: Optional[str] = Field(None, description="Dotted path into the response data, e.g. 'temperature' or 'values.0'.")
    scale: float = Field(1.0, description="Multiplier applied to the raw value.")
    offset: float = Field(0.0, description="Added after scaling.")
    model_config = {"extra": "forbid"}


class ExecutionConfig(BaseModel):
    strategy: ExecutionStrategy = Field(ExecutionStrategy.SINGLE_COMMAND, description="How the template is turned into wire commands.")
    command_type: Optional[str] = Field(None, description="Command used when the template has no required_command.")
    command_sequence: List[CommandStep] = Field(default_factory=list, description="Steps for multi_step templates.")
    parameters: Dict[str, ParameterValue] = Field(default_factory=dict, description="Template parameters; always override command defaults.")
    response_mapping: Optional[ResponseMapping] = Field(None)
    timeout_ms: int = Field(5000, gt=0, description="Per-command transport timeout.")
    state_parameter: str = Field("state", description="Parameter name carrying the ON/OFF state for actuators.")
    model_config = {"extra": "forbid"}


class CalibrationPoint(BaseModel):
    raw: float
    actual: float
    model_config = {"extra": "forbid"}


class CalibrationConfig(BaseModel):
    method: str = Field("linear", description="Calibration method (linear, polynomial, lookup).")
    points: List[CalibrationPoint] = Field(default_factory=list)
    min_value: Optional[float] = Field(None, description="Validation threshold: lowest plausible calibrated value.")
    max_value: Optional[float] = Field(None, description="Validation threshold: highest plausible calibrated value.")
    model_config = {"extra": "forbid"}


class HardwareLimits(BaseModel):
    min_value: Optional[float] = Field(None)
    max_value: Optional[float] = Field(None)
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_bounds(self) -> Self:
        if self.min_value is not None and self.max_value is not None and self.min_value > self.max_value:
            raise ValueError(f"min_value {self.min_value} is greater than max_value {self.max_value}")
        return self


class DeviceTemplate(BaseModel):
    """Capability template: how a family of devices is wired and addressed."""
    type: str = Field(..., description="Unique template key, e.g. 'dht22', 'ultrasonic', 'relay_pump'.")
    display_name: Optional[str] = Field(None)
    physical_type: PhysicalType = Field(..., description="Whether devices of this template are read or driven.")
    required_command: Optional[str] = Field(None, description="Firmware command compiled for this template.")
    port_requirements: List[PortRequirement] = Field(..., min_length=1)
    execution_config: ExecutionConfig = Field(default_factory=ExecutionConfig)
    calibration_config: Optional[CalibrationConfig] = Field(None)
    limits: Optional[HardwareLimits] = Field(None, description="Hardware range of the sensing element.")
    unit: Optional[str] = Field(None, description="Native unit of the reading.")
    version: str = Field("1.0.0")
    is_active: bool = Field(True, description="Soft-deactivated templates cannot be bound to devices.")
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_strategy_shape(self) -> Self:
        is_multi = self.execution_config.strategy == ExecutionStrategy.MULTI_STEP
        if is_multi and not self.execution_config.command_sequence:
            raise ValueError(f"Template '{self.type}' uses multi_step but has an empty command_sequence")
        if not is_multi and self.execution_config.command_sequence:
            raise ValueError(f"Template '{self.type}' declares a command_sequence but strategy is '{self.execution_config.strategy.value}'")
        if not is_multi and not (self.required_command or self.execution_config.command_type):
            raise ValueError(f"Template '{self.type}' names neither required_command nor execution_config.command_type")
        roles = [r.role for r in self.port_requirements]
        duplicates = {r for r in roles if roles.count(r) > 1}
        if duplicates:
            raise ValueError(f"Template '{self.type}' repeats port roles: {sorted(duplicates)}")
        return self

    @property
    def command_name(self) -> Optional[str]:
        return self.required_command or self.execution_config.command_type


class CapabilityCatalogDefinition(BaseModel):
    commands: List[CommandDefinition] = Field(default_factory=list)
    templates: List[DeviceTemplate] = Field(default_factory=list)
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_unique_keys(self) -> Self:
        for label, keys in (("command", [c.name for c in self.commands]), ("template", [t.type for t in self.templates])):
            duplicates = {k for k in keys if keys.count(k) > 1}
            if duplicates:
                raise ValueError(f"Duplicate {label} keys in catalog: {sorted(duplicates)}")
        return self
