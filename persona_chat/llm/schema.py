"""Structured-output schemas for the chat reply.

Each call returns a fresh dict; callers may mutate the result freely.
"""
from __future__ import annotations


def build_gemini_schema(include_image_field: bool = False) -> dict:
    part_properties: dict = {
        "delay": {"type": "INTEGER"},
        "content": {"type": "STRING"},
        "sticker": {"type": "STRING"},
    }
    if include_image_field:
        part_properties["imageGenerationSetting"] = {
            "type": "OBJECT",
            "properties": {
                "prompt": {"type": "STRING"},
                "isSelfie": {"type": "BOOLEAN"},
            },
            "required": ["prompt", "isSelfie"],
        }
    return {
        "type": "OBJECT",
        "properties": {
            "reactionDelay": {"type": "INTEGER"},
            "messages": {
                "type": "ARRAY",
                "items": {
                    "type": "OBJECT",
                    "properties": part_properties,
                    "required": ["delay"],
                },
            },
            "newMemory": {"type": "STRING"},
        },
        "required": ["reactionDelay", "messages"],
    }


def build_openai_response_format(include_image_field: bool = False) -> dict:
    part_properties: dict = {
        "delay": {"type": "integer"},
        "content": {"type": "string"},
        "sticker": {"type": ["string", "null"]},
    }
    required = ["delay", "content", "sticker"]
    if include_image_field:
        # strict mode requires every property to be listed; null means "no image"
        part_properties["imageGenerationSetting"] = {
            "type": ["object", "null"],
            "properties": {
                "prompt": {"type": "string"},
                "isSelfie": {"type": "boolean"},
            },
            "required": ["prompt", "isSelfie"],
            "additionalProperties": False,
        }
        required.append("imageGenerationSetting")
    return {
        "type": "json_schema",
        "json_schema": {
            "name": "chat_response",
            "strict": True,
            "schema": {
                "type": "object",
                "properties": {
                    "reactionDelay": {"type": "integer"},
                    "messages": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": part_properties,
                            "required": required,
                            "additionalProperties": False,
                        },
                    },
                    "newMemory": {"type": ["string", "null"]},
                },
                "required": ["reactionDelay", "messages", "newMemory"],
                "additionalProperties": False,
            },
        },
    }
