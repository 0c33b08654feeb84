# models/hook.py

"""
Hook and git action data models
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Dict, Any


class HookConfig(BaseModel):
    """A configured trigger and the action it queues.

    Post-receive hooks match GitHub deliveries on event, repository name and
    ref. Periodic hooks may omit ``action``, in which case the hook entry is
    the action itself.
    """
    model_config = ConfigDict(extra="allow")

    event: str = "push"
    reponame: Optional[str] = None
    ref: Optional[str] = None
    action: Optional[Dict[str, Any]] = None

    @property
    def event_name(self) -> str:
        name = self.event
        if self.reponame:
            name += f":{self.reponame}"
            if self.ref:
                name += f":{self.ref}"
        return name

    def action_params(self) -> Dict[str, Any]:
        if self.action is not None:
            return dict(self.action)
        return {
            key: value for key, value in self.model_dump(exclude_none=True).items()
            if key not in ("event", "reponame", "ref", "action")
        }


class GitAction(BaseModel):
    """Parameters of a git action job, as interpreted by the worker"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    origin: str = Field(..., min_length=1, description="Origin URL of the Git repository")
    branch: str = "master"
    script: str = Field(..., min_length=1, description="Script to run, relative to the repo root")
    check: Optional[str] = Field(None, description="Script exiting with 42 when the action must run")
    install: Optional[str] = Field(None, description="Command to run after clone or pull")
    env: Dict[str, str] = Field(default_factory=dict)
    privatekey: Optional[str] = None
    data_folder: str = Field("data", alias="dataFolder")
    timeout: int = Field(600, gt=0, description="Seconds before the action gets killed")
    source: Optional[str] = Field(None, alias="from")

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value):
        if value is None:
            return {}
        return {str(k): str(v) for k, v in value.items()}
