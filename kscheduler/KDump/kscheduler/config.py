from typing import List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from KDump.kcore import StorageProviderConfig

class SchedulerConfig(BaseModel):
    model_config = ConfigDict(extra='allow')

    deploymentName: str
    allowedOrigins: List[str]=Field(default_factory=list)
    storage: StorageProviderConfig
    # keyed by worker type;
    workerConfigs: Dict[str, Dict[str, Any]]=Field(default_factory=dict)
    dbPath: str
    listen: str=Field('0.0.0.0')
    listenPort: int=Field(8000)
