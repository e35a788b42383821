# shared_libs/config_models/inventory_models.py

from typing import List, Optional, Self
from pydantic import BaseModel, Field, model_validator

from .catalog_models import CapabilityCatalogDefinition
from .topology_models import ControllerDefinition, RelayBoardDefinition, DeviceDefinition
from .flow_models import FlowDefinition


class BrokerConfig(BaseModel):
    """Non-secret MQTT broker settings; credentials come from BrokerSecrets."""
    address: str = Field("localhost", description="Hostname or IP address of the broker.")
    port: int = Field(1883)
    client_id: str = Field("hydroflow-engine")
    model_config = {"extra": "forbid"}


class EngineSettings(BaseModel):
    mqtt_topic_prefix: str = Field("hydroflow/", description="Prefix for command, response and event topics. Must end with a slash.")
    default_timeout_ms: int = Field(5000, gt=0, description="Transport timeout used when a command carries none.")
    max_steps: int = Field(10000, gt=0, description="Blocks a single session may execute before it is failed.")
    broker: Optional[BrokerConfig] = Field(None)
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_prefix(self) -> Self:
        if not self.mqtt_topic_prefix.endswith("/"):
            raise ValueError(f"mqtt_topic_prefix '{self.mqtt_topic_prefix}' must end with '/'")
        return self


class InventoryDefinition(BaseModel):
    """Everything the engine needs: catalog, physical topology, devices and flows."""
    engine: EngineSettings = Field(default_factory=EngineSettings)
    catalog: CapabilityCatalogDefinition = Field(default_factory=CapabilityCatalogDefinition)
    controllers: List[ControllerDefinition] = Field(default_factory=list)
    relays: List[RelayBoardDefinition] = Field(default_factory=list)
    devices: List[DeviceDefinition] = Field(default_factory=list)
    flows: List[FlowDefinition] = Field(default_factory=list)
    model_config = {"extra": "forbid"}

    @model_validator(mode='after')
    def check_unique_ids(self) -> Self:
        for label, ids in (
            ("controller", [c.id for c in self.controllers]),
            ("relay", [r.id for r in self.relays]),
            ("device", [d.id for d in self.devices]),
            ("flow", [f.id for f in self.flows]),
        ):
            duplicates = {i for i in ids if ids.count(i) > 1}
            if duplicates:
                raise ValueError(f"Duplicate {label} ids: {sorted(duplicates)}")
        return self
