"""
Workflow definition parser

Definitions are YAML or JSON documents. Step configs are checked against a
JSON Schema and turned into typed config objects here, so a saved workflow
never carries an untyped payload into execution.
"""
import json
import logging
from pathlib import Path
from typing import Dict, Any, List, Optional, Union

import yaml
from jsonschema import Draft7Validator

from ..models.workflow import (
    Workflow, Step, StepType, TriggerType,
    SendSmsConfig, SendEmailConfig, AddTagConfig, RemoveTagConfig,
    DelayConfig, ConditionalConfig
)
from ..exceptions import WorkflowParseError, WorkflowValidationError
from .conditions import FIELD_CATEGORIES, operators_for


logger = logging.getLogger(__name__)

STEP_TYPE_ALIASES = {
    "if": StepType.CONDITIONAL.value,
    "sms": StepType.SEND_SMS.value,
    "email": StepType.SEND_EMAIL.value,
    "wait": StepType.DELAY.value,
}

_STEP_CONFIG_SCHEMAS = {
    StepType.SEND_SMS.value: {
        "type": "object",
        "required": ["message"],
        "properties": {"message": {"type": "string", "minLength": 1}},
    },
    StepType.SEND_EMAIL.value: {
        "type": "object",
        "required": ["subject", "body"],
        "properties": {
            "subject": {"type": "string"},
            "body": {"type": "string", "minLength": 1},
        },
    },
    StepType.ADD_TAG.value: {
        "type": "object",
        "required": ["tag"],
        "properties": {"tag": {"type": "string", "minLength": 1}},
    },
    StepType.REMOVE_TAG.value: {
        "type": "object",
        "properties": {
            "tag": {"type": ["string", "null"]},
            "remove_all": {"type": "boolean"},
        },
        "anyOf": [
            {"required": ["tag"], "properties": {"tag": {"type": "string", "minLength": 1}}},
            {"required": ["remove_all"], "properties": {"remove_all": {"const": True}}},
        ],
    },
    StepType.DELAY.value: {
        "type": "object",
        "required": ["value", "unit"],
        "properties": {
            "value": {"type": "number", "minimum": 0},
            "unit": {"type": "string"},
        },
    },
    StepType.CONDITIONAL.value: {
        "type": "object",
        "required": ["field", "operator", "value"],
        "properties": {
            "field": {"enum": sorted(FIELD_CATEGORIES)},
            "operator": {"type": "string", "minLength": 1},
            "value": {"type": ["string", "number", "boolean"]},
        },
    },
}

WORKFLOW_SCHEMA = {
    "type": "object",
    "required": ["name", "trigger", "steps"],
    "properties": {
        "id": {"type": "string"},
        "org_id": {"type": "string"},
        "name": {"type": "string", "minLength": 1},
        "description": {"type": ["string", "null"]},
        "trigger": {"enum": [t.value for t in TriggerType]},
        "enabled": {"type": "boolean"},
        "prevent_duplicates": {"type": "boolean"},
        "duplicate_prevention_days": {"type": "integer", "minimum": 0},
        "start_step_id": {"type": ["string", "null"]},
        "metadata": {"type": "object"},
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["id", "type"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "name": {"type": ["string", "null"]},
                    "type": {"enum": [t.value for t in StepType]},
                    "config": {"type": "object"},
                    "next_step_id": {"type": ["string", "null"]},
                    "true_step_id": {"type": ["string", "null"]},
                    "false_step_id": {"type": ["string", "null"]},
                },
                "allOf": [
                    {
                        "if": {"properties": {"type": {"const": step_type}}},
                        "then": {
                            "required": ["config"],
                            "properties": {"config": schema},
                        },
                    }
                    for step_type, schema in _STEP_CONFIG_SCHEMAS.items()
                ],
            },
        },
    },
}


class WorkflowParser:
    """Workflow definition parser"""

    def __init__(self, default_duplicate_prevention_days: int = 30):
        self.default_duplicate_prevention_days = default_duplicate_prevention_days
        self.validator = Draft7Validator(WORKFLOW_SCHEMA)
        self.parsers = {
            'yaml': self._parse_yaml,
            'yml': self._parse_yaml,
            'json': self._parse_json
        }

    def parse(self, source: Union[str, Path, Dict[str, Any]], org_id: str = None) -> Workflow:
        """
        Parse a workflow definition

        Args:
            source: file path, YAML/JSON string or dict
            org_id: owning org, overrides the document's org_id

        Returns:
            Workflow: validated workflow
        """
        if isinstance(source, dict):
            return self.parse_dict(source, org_id)

        if isinstance(source, (str, Path)):
            # multi-line strings are documents, never paths
            if isinstance(source, Path) or "\n" not in source:
                path = Path(source)
                if path.is_file():
                    return self.parse_file(path, org_id)
            return self.parse_string(str(source), org_id)

        raise WorkflowParseError(f"Unsupported source type: {type(source)}")

    def parse_file(self, file_path: Path, org_id: str = None) -> Workflow:
        """Parse a .yaml/.yml/.json file"""
        file_path = Path(file_path)
        suffix = file_path.suffix.lower().lstrip('.')
        if suffix not in self.parsers:
            raise WorkflowParseError(f"Unsupported file format: {suffix}")

        with open(file_path, 'r', encoding='utf-8') as f:
            content = f.read()

        data = self.parsers[suffix](content)
        return self.parse_dict(data, org_id)

    def parse_string(self, content: str, org_id: str = None) -> Workflow:
        """Parse YAML (or JSON) text"""
        try:
            data = self._parse_yaml(content)
        except WorkflowParseError:
            data = self._parse_json(content)
        return self.parse_dict(data, org_id)

    def _parse_yaml(self, content: str) -> Dict[str, Any]:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Failed to parse YAML: {e}")

    def _parse_json(self, content: str) -> Dict[str, Any]:
        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise WorkflowParseError(f"Failed to parse JSON: {e}")

    def parse_dict(self, data: Dict[str, Any], org_id: str = None) -> Workflow:
        """Validate and build a workflow from a plain dict"""
        if not isinstance(data, dict):
            raise WorkflowParseError(f"Workflow definition must be a mapping, got {type(data).__name__}")
        if 'workflow' in data:
            data = data['workflow']

        data = self._normalize(data)
        errors = self.schema_errors(data)
        if errors:
            raise WorkflowValidationError("Workflow schema validation failed", errors)

        steps: Dict[str, Step] = {}
        step_list = data['steps']
        for index, step_data in enumerate(step_list):
            step = self._parse_step(step_data, step_list, index)
            if step.id in steps:
                raise WorkflowValidationError("Workflow validation failed", [f"Duplicate step id '{step.id}'"])
            steps[step.id] = step

        workflow_kwargs = {}
        if data.get('id'):
            workflow_kwargs['id'] = data['id']

        workflow = Workflow(
            org_id=org_id or data.get('org_id', ''),
            name=data['name'],
            description=data.get('description'),
            trigger=data['trigger'],
            steps=steps,
            start_step_id=data.get('start_step_id') or step_list[0]['id'],
            enabled=data.get('enabled', False),
            prevent_duplicates=data.get('prevent_duplicates', True),
            duplicate_prevention_days=data.get(
                'duplicate_prevention_days', self.default_duplicate_prevention_days
            ),
            metadata=data.get('metadata') or {},
            **workflow_kwargs
        )

        errors = workflow.validate()
        if errors:
            raise WorkflowValidationError("Workflow validation failed", errors)

        logger.debug(f"Parsed workflow '{workflow.name}' with {len(steps)} steps")
        return workflow

    def schema_errors(self, data: Dict[str, Any]) -> List[str]:
        """JSON Schema problems of a normalized definition"""
        errors = []
        for error in sorted(self.validator.iter_errors(data), key=lambda e: list(map(str, e.path))):
            location = ".".join(str(part) for part in error.path) or "workflow"
            errors.append(f"{location}: {error.message}")
        return errors

    def _normalize(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        steps = []
        for step_data in data.get('steps') or []:
            if isinstance(step_data, dict):
                step_data = dict(step_data)
                step_type = step_data.get('type')
                step_data['type'] = STEP_TYPE_ALIASES.get(step_type, step_type)
            steps.append(step_data)
        if 'steps' in data:
            data['steps'] = steps
        return data

    def _parse_step(self, data: Dict[str, Any], step_list: List[Dict[str, Any]], index: int) -> Step:
        step_type = StepType(data['type'])
        config = self._build_config(step_type, data.get('config') or {})

        if step_type == StepType.CONDITIONAL:
            operator = config.operator
            if operator not in operators_for(config.field):
                logger.warning(
                    f"Step '{data['id']}': operator '{operator}' is not supported "
                    f"for field '{config.field}' and will always evaluate to false"
                )
            return Step(
                id=data['id'],
                type=step_type,
                config=config,
                name=data.get('name'),
                true_step_id=data.get('true_step_id'),
                false_step_id=data.get('false_step_id'),
            )

        # linear sequences may omit next_step_id; null ends the workflow
        if 'next_step_id' in data:
            next_step_id = data['next_step_id']
        else:
            next_step_id = step_list[index + 1]['id'] if index + 1 < len(step_list) else None

        return Step(
            id=data['id'],
            type=step_type,
            config=config,
            name=data.get('name'),
            next_step_id=next_step_id,
        )

    def _build_config(self, step_type: StepType, config: Dict[str, Any]):
        if step_type == StepType.SEND_SMS:
            return SendSmsConfig(message=config['message'])
        if step_type == StepType.SEND_EMAIL:
            return SendEmailConfig(subject=config.get('subject', ''), body=config['body'])
        if step_type == StepType.ADD_TAG:
            return AddTagConfig(tag=config['tag'])
        if step_type == StepType.REMOVE_TAG:
            return RemoveTagConfig(
                tag=config.get('tag'),
                remove_all=bool(config.get('remove_all', False))
            )
        if step_type == StepType.DELAY:
            return DelayConfig(value=config['value'], unit=config['unit'])
        if step_type == StepType.CONDITIONAL:
            value = config['value']
            return ConditionalConfig(
                field=config['field'],
                operator=config['operator'],
                value=value if isinstance(value, str) else str(value),
            )
        raise WorkflowParseError(f"No config type for step type {step_type}")


def workflow_from_snapshot(snapshot: Dict[str, Any]) -> Optional[Workflow]:
    """Rebuild the workflow captured on an enrollment"""
    if not snapshot:
        return None
    return WorkflowParser().parse_dict(snapshot, snapshot.get('org_id'))


__all__ = ["WorkflowParser", "WORKFLOW_SCHEMA", "workflow_from_snapshot"]
