from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


Role = Literal["user", "assistant", "system"]
ProviderKind = Literal["ollama", "openai", "anthropic", "google"]
WriteMode = Literal["overwrite", "append"]
RunStatus = Literal["running", "success", "failed"]
ToolStatus = Literal["active", "limited", "wip", "disabled"]


class ChatMessage(BaseModel):
    role: Role
    content: str = ""
    images: Optional[List[str]] = None


class ToolCall(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class CompletionResult(BaseModel):
    content: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)


class StreamResult(BaseModel):
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ToolResult(BaseModel):
    tool: str
    result: str
    is_error: bool = Field(default=False, alias="isError")

    model_config = {"populate_by_name": True}


class ToolDefinition(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    status: ToolStatus = "active"
    status_message: Optional[str] = Field(default=None, alias="statusMessage")

    model_config = {"populate_by_name": True}


class ModelCapabilities(BaseModel):
    tools: bool = False
    vision: bool = False
    streaming: bool = True
    max_tokens: int = Field(default=4096, alias="maxTokens")

    model_config = {"populate_by_name": True}


class ModelDefinition(BaseModel):
    id: str
    display_name: str = Field(alias="displayName")
    provider: ProviderKind
    type: Literal["local", "cloud"] = "cloud"
    capabilities: ModelCapabilities = Field(default_factory=ModelCapabilities)

    model_config = {"populate_by_name": True}


class ScheduleConfig(BaseModel):
    frequency: Literal["hourly", "daily", "weekly", "custom"] = "daily"
    time: Optional[str] = None
    day_of_week: Optional[int] = Field(default=None, alias="dayOfWeek", ge=0, le=6)
    cron_expression: Optional[str] = Field(default=None, alias="cronExpression")

    model_config = {"populate_by_name": True, "frozen": True}


class Trigger(BaseModel):
    type: Literal["manual", "schedule", "event"] = "manual"
    schedule_config: Optional[ScheduleConfig] = Field(default=None, alias="scheduleConfig")

    model_config = {"populate_by_name": True, "frozen": True}


class _StepBase(BaseModel):
    id: str = ""
    output_variable: Optional[str] = Field(default=None, alias="outputVariable")

    model_config = {"populate_by_name": True, "extra": "allow"}


class AgentActionStep(_StepBase):
    type: Literal["agent_action"] = "agent_action"
    agent_id: Optional[str] = Field(default=None, alias="agentId")
    prompt: Optional[str] = None


class IntegrationActionStep(_StepBase):
    type: Literal["integration_action"] = "integration_action"
    integration_id: Optional[str] = Field(default=None, alias="integrationId")
    integration_action: Optional[str] = Field(default=None, alias="integrationAction")
    integration_args: Dict[str, Any] = Field(default_factory=dict, alias="integrationArgs")


class SaveToVaultStep(_StepBase):
    type: Literal["save_to_vault"] = "save_to_vault"
    vault_path: Optional[str] = Field(default=None, alias="vaultPath")
    write_mode: WriteMode = Field(default="overwrite", alias="writeMode")
    source_variable: Optional[str] = Field(default=None, alias="sourceVariable")


class WaitStep(_StepBase):
    type: Literal["wait"] = "wait"
    wait_duration: int = Field(default=1000, alias="waitDuration", ge=0)


class ConditionStep(_StepBase):
    type: Literal["condition"] = "condition"
    condition: Optional[Dict[str, Any]] = None


PipelineStep = Annotated[
    Union[AgentActionStep, IntegrationActionStep, SaveToVaultStep, WaitStep, ConditionStep],
    Field(discriminator="type"),
]


class Agent(BaseModel):
    id: str
    name: str = ""
    system_prompt: str = Field(default="", alias="systemPrompt")
    preferred_model_id: Optional[str] = Field(default=None, alias="preferredModelId")

    model_config = {"populate_by_name": True}


class Automation(BaseModel):
    id: str
    name: str = ""
    trigger: Trigger = Field(default_factory=Trigger)
    pipeline: List[PipelineStep] = Field(default_factory=list)
    is_active: bool = Field(default=False, alias="isActive")
    last_run_at: Optional[str] = Field(default=None, alias="lastRunAt")

    model_config = {"populate_by_name": True}


class AutomationProgress(BaseModel):
    current: int = 0
    total: int = 0


class AutomationRun(BaseModel):
    run_id: str
    automation_id: str
    status: RunStatus = "running"
    started_at: str
    finished_at: Optional[str] = None
    error: Optional[str] = None
    logs: List[str] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    messages: List[ChatMessage]
    model_id: Optional[str] = None
    stream: bool = True
    use_tools: bool = True
