"""
Usage documentation for published models.

Generates the endpoint, auth header and copy-paste examples shown to a
tenant after publishing. The real key is only embedded when it is being
handed out anyway (publish and rotate responses).
"""

import json
from typing import Any, Dict, List, Optional

from model_registry import ModelType

API_KEY_PLACEHOLDER = "<your-api-key>"

OPENAI_CHAT_BODY = {
    "model": "{model}",
    "messages": [{"role": "user", "content": "Hello, how are you?"}],
    "max_tokens": 150,
    "temperature": 0.7,
}
TRADITIONAL_BODY = {"instances": [[6.8, 2.8, 4.8, 1.4], [6.0, 3.4, 4.5, 1.6]]}


def _example(method: str, url: str, api_key: str, body: Optional[Dict[str, Any]], description: str) -> Dict[str, Any]:
    headers = {"X-API-Key": api_key}
    if body is not None:
        headers["Content-Type"] = "application/json"
    return {
        "method": method,
        "url": url,
        "headers": headers,
        "body": json.dumps(body, indent=2) if body is not None else "",
        "description": description,
    }


def _chat_body(model_name: str) -> Dict[str, Any]:
    return {**OPENAI_CHAT_BODY, "model": model_name}


def example_requests(model_name: str, model_type: ModelType, external_url: str, api_key: str) -> List[Dict[str, Any]]:
    if model_type == ModelType.OPENAI:
        return [
            _example("POST", f"{external_url}/chat/completions", api_key, _chat_body(model_name),
                     "Chat completion request (OpenAI compatible)"),
            _example("POST", f"{external_url}/completions", api_key,
                     {"model": model_name, "prompt": "Once upon a time", "max_tokens": 50},
                     "Text completion request (OpenAI compatible)"),
            _example("GET", f"{external_url}/models", api_key, None,
                     "List available models (OpenAI compatible)"),
        ]
    return [
        _example("POST", external_url, api_key, TRADITIONAL_BODY, "Model prediction request"),
    ]


def sdk_examples(model_name: str, model_type: ModelType, external_url: str, api_key: str) -> Dict[str, str]:
    if model_type == ModelType.OPENAI:
        body = json.dumps(_chat_body(model_name))
        url = f"{external_url}/chat/completions"
        python = (
            "import requests\n\n"
            f"response = requests.post(\n"
            f"    \"{url}\",\n"
            f"    headers={{\"X-API-Key\": \"{api_key}\"}},\n"
            f"    json={body},\n"
            ")\n"
            "print(response.json()[\"choices\"][0][\"message\"][\"content\"])\n"
        )
    else:
        body = json.dumps(TRADITIONAL_BODY)
        url = external_url
        python = (
            "import requests\n\n"
            f"response = requests.post(\n"
            f"    \"{url}\",\n"
            f"    headers={{\"X-API-Key\": \"{api_key}\"}},\n"
            f"    json={body},\n"
            ")\n"
            "print(response.json()[\"predictions\"])\n"
        )

    curl = (
        f"curl -X POST \"{url}\" \\\n"
        f"  -H \"X-API-Key: {api_key}\" \\\n"
        "  -H \"Content-Type: application/json\" \\\n"
        f"  -d '{body}'"
    )
    return {"curl": curl, "python": python}


def generate_documentation(
    model_name: str,
    model_type: ModelType,
    external_url: str,
    api_key: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the documentation block of a published model.

    Args:
        model_name: Published model name
        model_type: Decides between OpenAI-style and KServe-style examples
        external_url: Public URL of the model
        api_key: Key to embed. A placeholder is used when omitted.
    """
    key = api_key or API_KEY_PLACEHOLDER
    return {
        "endpointUrl": external_url,
        "authHeaders": {"X-API-Key": key},
        "exampleRequests": example_requests(model_name, model_type, external_url, key),
        "sdkExamples": sdk_examples(model_name, model_type, external_url, key),
    }
