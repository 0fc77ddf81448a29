# providers/__init__.py
from importlib import import_module
from types import ModuleType

from azure_gateway.load_config import MODEL_TYPE_CHAT, MODEL_TYPE_CODEX

# map model type -> adapter module
_PROVIDER_MODULES = {
    MODEL_TYPE_CHAT: "azure_gateway.providers.azure",
    MODEL_TYPE_CODEX: "azure_gateway.providers.azure_responses",
}


# lazy loader: returns a module exposing forward(client, data, messages, config)
# and forward_stream(client, data, messages, config)
def get_provider(model_type: str) -> ModuleType:
    mod_name = _PROVIDER_MODULES.get(model_type) or _PROVIDER_MODULES[MODEL_TYPE_CHAT]
    return import_module(mod_name)
