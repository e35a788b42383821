from pydantic import BaseModel, Field


class BrokerSecrets(BaseModel):
    username: str = Field(..., description="MQTT username (secret)")
    password: str = Field(..., description="MQTT password (secret)")
    broker_address: str | None = Field(None, description="Overrides engine.broker.address when set (secret)")
    broker_port: int | None = Field(None, description="Overrides engine.broker.port when set (secret)")
    model_config = {"extra": "forbid"}
