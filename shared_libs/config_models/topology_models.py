# shared_libs/config_models/topology_models.py

import enum
from typing import Annotated, Dict, List, Literal, Optional, Union, Self
from pydantic import BaseModel, Field, model_validator

from .catalog_models import PortType


class RelayLogic(str, enum.Enum):
    ACTIVE_HIGH = "active_high"
    ACTIVE_LOW = "active_low"


class FallbackAction(str, enum.Enum):
    ERROR = "error"
    USE_LAST_VALID = "useLastValid"
    USE_DEFAULT = "useDefault"
    SKIP = "skip"


# --- Controllers and relay boards ---

class ControllerPort(BaseModel):
    id: str = Field(..., description="Port id as printed on the board, e.g. 'D2', 'A0'.")
    type: PortType = Field(..., description="Electrical capability of the port.")
    is_active: bool = Field(True, description="Inactive ports cannot be allocated.")
    model_config = {"extra": "forbid"}


class ControllerDefinition(BaseModel):
    id: str = Field(..., description="Unique controller id, also used as the transport address.")
    name: Optional[str] = Field(None)
    board: Optional[str] = Field(None, description="Board family, e.g. 'arduino_uno', 'esp32'.")
    ports: List[ControllerPort] = Field(default_factory=list)
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_unique_ports(self) -> Self:
        ids = [p.id for p in self.ports]
        duplicates = {p for p in ids if ids.count(p) > 1}
        if duplicates:
            raise ValueError(f"Controller '{self.id}' repeats port ids: {sorted(duplicates)}")
        return self


class RelayChannel(BaseModel):
    channel_index: int = Field(..., ge=0)
    controller_port_id: str = Field(..., description="Controller port that drives this channel.")
    model_config = {"extra": "forbid"}


class RelayBoardDefinition(BaseModel):
    id: str = Field(...)
    name: Optional[str] = Field(None)
    controller_id: str = Field(..., description="Controller whose ports drive the channels.")
    logic: RelayLogic = Field(RelayLogic.ACTIVE_HIGH, description="Line level that energises a channel.")
    channels: List[RelayChannel] = Field(..., min_length=1)
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_channels(self) -> Self:
        indices = [c.channel_index for c in self.channels]
        if len(indices) != len(set(indices)):
            raise ValueError(f"Relay '{self.id}' repeats channel indices")
        ports = [c.controller_port_id for c in self.channels]
        if len(ports) != len(set(ports)):
            raise ValueError(f"Relay '{self.id}' wires two channels to the same controller port")
        return self

    def get_channel(self, channel_index: int) -> Optional[RelayChannel]:
        return next((c for c in self.channels if c.channel_index == channel_index), None)


# --- Devices ---

class DirectBinding(BaseModel):
    kind: Literal["direct"] = "direct"
    controller_id: str = Field(...)
    pins: Dict[str, str] = Field(default_factory=dict, description="Role -> controller port id.")
    model_config = {"extra": "forbid"}


class RelayBinding(BaseModel):
    kind: Literal["relay"] = "relay"
    relay_id: str = Field(...)
    channel: int = Field(..., ge=0)
    model_config = {"extra": "forbid"}


DeviceBinding = Annotated[Union[DirectBinding, RelayBinding], Field(discriminator="kind")]


class RangeOverride(BaseModel):
    min_value: Optional[float] = Field(None)
    max_value: Optional[float] = Field(None)
    model_config = {"extra": "forbid"}


class ValidationConfig(BaseModel):
    """Sampling and fallback policy applied to every read of a sensor."""
    range: Optional[RangeOverride] = Field(None, description="Tightens the template limits for this device.")
    sample_count: int = Field(1, ge=1)
    sample_delay_ms: int = Field(0, ge=0)
    retry_count: int = Field(3, ge=0)
    retry_delay_ms: int = Field(100, ge=0)
    fallback_action: FallbackAction = Field(FallbackAction.ERROR)
    default_value: Optional[float] = Field(None, description="Value substituted by the useDefault fallback.")
    stale_limit: int = Field(1, ge=0, description="Consecutive failures tolerated before fallbacks are refused.")
    stale_timeout_ms: int = Field(30000, gt=0, description="Maximum age of the last valid reading for fallbacks.")
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_default(self) -> Self:
        if self.fallback_action == FallbackAction.USE_DEFAULT and self.default_value is None:
            raise ValueError("fallback_action 'useDefault' requires default_value")
        return self


class DeviceCalibration(BaseModel):
    flow_rate_ml_per_s: Optional[float] = Field(None, gt=0, description="Pump delivery rate used to time DOSE actions.")
    dose_size_ml: Optional[float] = Field(None, gt=0, description="Volume of one dose for amount_unit 'doses'.")
    model_config = {"extra": "forbid"}


class DeviceDefinition(BaseModel):
    id: str = Field(...)
    name: Optional[str] = Field(None)
    template: str = Field(..., description="DeviceTemplate.type this device instantiates.")
    enabled: bool = Field(True, description="Disabled devices hold no ports.")
    binding: DeviceBinding
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    calibration: Optional[DeviceCalibration] = Field(None)
    display_unit: Optional[str] = Field(None)
    model_config = {"extra": "forbid"}
