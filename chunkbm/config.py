# Copyright 2025 ChunkBM Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Configuration management and builders for ChunkBM experiments

This module provides:
- YAML and JSON experiment loading with dotted-key overrides
- Environment variable substitution (${VAR:default})
- Schema validation of the model and training sections
- Builders turning a configuration into networks, learners and optimizers

Usage:
    from chunkbm.config import ConfigManager, create_network

    config = ConfigManager.load('configs/binary_rbm.yaml',
                                overrides={'training.learning_rate': 0.02})
    bm = create_network(config)
"""

import copy
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import yaml
from jsonschema import validate, ValidationError

from .models.bm import BoltzmannMachine, RestrictedBoltzmannMachine
from .models.chunks import Chunk, ChunkKind
from .models.dbm import DeepBoltzmannMachine
from .models.mean_field import DefaultMeanFieldSupervisor
from .training.learners import BMLearner, BMPCDLearner, RBMCDLearner
from .training.monitors import ReconstructionRMSEMonitor
from .training.optim import GradientAccumulator, SGDOptimizer
from .training.sparsity import CheatingSparsityGradientSource, NormalSparsityGradientSource

logger = logging.getLogger(__name__)

_CHUNK_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "size": {"type": "integer", "minimum": 1},
        "kind": {"type": "string", "enum": [kind.value for kind in ChunkKind]},
        "group_size": {"type": "integer", "minimum": 1},
        "scale": {"type": "number"},
        "default_value": {"type": "number"},
        "source": {"type": "string"}
    },
    "required": ["name", "size"]
}

_CHUNK_LIST_SCHEMA = {"type": "array", "items": _CHUNK_SCHEMA}

_CLOUD_SCHEMA = {
    "type": "object",
    "properties": {
        "chunk1": {"type": "string"},
        "chunk2": {"type": "string"},
        "kind": {"enum": ["full", "factored", None]},
        "name": {"type": "string"},
        "scale1": {"type": "number"},
        "scale2": {"type": "number"},
        "rank": {"type": "integer", "minimum": 1},
        "init_std": {"type": "number", "minimum": 0}
    },
    "required": ["chunk1", "chunk2"]
}

_SAMPLING_SCHEMA = {"enum": [None, "half-hearted", "full"]}


class ConfigManager:
    """Configuration management for ChunkBM experiments."""

    CONFIG_SCHEMA = {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "description": {"type": "string"},
            "model": {
                "type": "object",
                "properties": {
                    "type": {"type": "string", "enum": ["bm", "rbm", "dbm"]},
                    "visible": _CHUNK_LIST_SCHEMA,
                    "hidden": _CHUNK_LIST_SCHEMA,
                    "layers": {"type": "array", "items": _CHUNK_LIST_SCHEMA, "minItems": 2},
                    "clouds": {"type": "array", "items": _CLOUD_SCHEMA},
                    "default_clouds": {"type": "boolean"},
                    "max_n_stripes": {"type": "integer", "minimum": 1},
                    "mean_field": {"type": "object"}
                },
                "required": ["type"]
            },
            "training": {
                "type": "object",
                "properties": {
                    "learner": {"type": "string", "enum": ["cd", "pcd"]},
                    "epochs": {"type": "integer", "minimum": 1},
                    "batch_size": {"type": "integer", "minimum": 1},
                    "n_gibbs": {"type": "integer", "minimum": 1},
                    "n_particles": {"type": "integer", "minimum": 1},
                    "visible_sampling": _SAMPLING_SCHEMA,
                    "hidden_sampling": _SAMPLING_SCHEMA,
                    "learning_rate": {"type": "number", "minimum": 0},
                    "momentum": {"type": "number", "minimum": 0},
                    "weight_decay": {"type": "number", "minimum": 0},
                    "frozen": {"type": "array", "items": {"type": "string"}},
                    "no_decay": {"type": "array", "items": {"type": "string"}},
                    "sparsity": {"type": "array", "items": {"type": "object"}}
                }
            },
            "data": {"type": "object"},
            "output": {"type": "object"}
        },
        "required": ["name", "model", "training"]
    }

    @classmethod
    def load(
        cls,
        config_path: Union[str, Path],
        overrides: Optional[Dict[str, Any]] = None,
        validate_config: bool = True
    ) -> Dict[str, Any]:
        """
        Load configuration with optional overrides.

        Args:
            config_path: Path to configuration file
            overrides: Dictionary of dotted-key parameter overrides
            validate_config: Whether to validate the configuration

        Returns:
            Loaded and processed configuration dictionary
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r') as f:
            if config_path.suffix.lower() in ['.yaml', '.yml']:
                config = yaml.safe_load(f)
            elif config_path.suffix.lower() == '.json':
                config = json.load(f)
            else:
                raise ValueError(f"Unsupported config format: {config_path.suffix}")

        logger.info(f"Loaded base configuration from {config_path}")

        if overrides:
            config = cls._apply_overrides(config, overrides)
            logger.info(f"Applied {len(overrides)} parameter overrides")

        config = cls._substitute_env_vars(config)

        if validate_config:
            cls.validate(config)

        config['_metadata'] = {
            'loaded_from': str(config_path),
            'loaded_at': datetime.now().isoformat(),
            'overrides_applied': overrides is not None
        }

        return config

    @classmethod
    def validate(cls, config: Dict[str, Any]) -> None:
        """
        Validate configuration against schema.

        Raises:
            ValidationError: If configuration is invalid
        """
        try:
            validate(instance=config, schema=cls.CONFIG_SCHEMA)
            logger.info("Configuration validation passed")
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e.message}")
            raise

    @classmethod
    def save(
        cls,
        config: Dict[str, Any],
        output_path: Union[str, Path],
        format: str = 'yaml',
        include_metadata: bool = True
    ) -> None:
        """
        Save configuration to file.

        Args:
            config: Configuration dictionary to save
            output_path: Output file path
            format: Output format ('yaml' or 'json')
            include_metadata: Whether to include metadata in output
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        save_config = copy.deepcopy(config)
        if not include_metadata:
            save_config.pop('_metadata', None)

        with open(output_path, 'w') as f:
            if format.lower() == 'yaml':
                yaml.dump(save_config, f, default_flow_style=False, indent=2)
            elif format.lower() == 'json':
                json.dump(save_config, f, indent=2)
            else:
                raise ValueError(f"Unsupported format: {format}")

        logger.info(f"Saved configuration to {output_path}")

    @classmethod
    def merge(cls, *configs: Dict[str, Any]) -> Dict[str, Any]:
        """Merge multiple configurations, later ones taking precedence."""
        if not configs:
            return {}

        result = copy.deepcopy(configs[0])
        for config in configs[1:]:
            result = cls._deep_merge(result, config)
        return result

    @staticmethod
    def _apply_overrides(config: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Apply parameter overrides using dot notation."""
        result = copy.deepcopy(config)
        for key, value in overrides.items():
            ConfigManager._set_nested_value(result, key, value)
        return result

    @staticmethod
    def _substitute_env_vars(config: Dict[str, Any]) -> Dict[str, Any]:
        """Substitute environment variables in configuration values."""
        def substitute_recursive(obj):
            if isinstance(obj, dict):
                return {k: substitute_recursive(v) for k, v in obj.items()}
            elif isinstance(obj, list):
                return [substitute_recursive(item) for item in obj]
            elif isinstance(obj, str) and obj.startswith('${') and obj.endswith('}'):
                env_var = obj[2:-1]
                default_value = None
                if ':' in env_var:
                    env_var, default_value = env_var.split(':', 1)
                return os.getenv(env_var, default_value)
            else:
                return obj

        return substitute_recursive(config)

    @staticmethod
    def _deep_merge(dict1: Dict[str, Any], dict2: Dict[str, Any]) -> Dict[str, Any]:
        result = copy.deepcopy(dict1)
        for key, value in dict2.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result

    @staticmethod
    def _set_nested_value(config: Dict[str, Any], key_path: str, value: Any) -> None:
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value


# Builders

def _build_chunks(groups: Sequence[Sequence[Dict[str, Any]]], max_n_stripes: int) -> List[List[Chunk]]:
    """
    Build the chunks of several groups at once.

    Temporal chunks are built last so their source may be any other chunk.
    """
    built: Dict[str, Chunk] = {}
    specs = [spec for group in groups for spec in group]
    ordered = sorted(specs, key=lambda spec: spec.get('kind') == ChunkKind.TEMPORAL.value)
    for spec in ordered:
        spec = dict(spec)
        source_name = spec.pop('source', None)
        source = None
        if source_name is not None:
            if source_name not in built:
                raise ValueError(f"Chunk {spec['name']} refers to unknown source {source_name}")
            source = built[source_name]
        chunk = Chunk(max_n_stripes=max_n_stripes, source=source, **spec)
        if chunk.name in built:
            raise ValueError(f"Duplicate chunk name: {chunk.name}")
        built[chunk.name] = chunk
    return [[built[spec['name']] for spec in group] for group in groups]


def create_network(config: Dict[str, Any]) -> BoltzmannMachine:
    """Build a BM, RBM or DBM from the model section of a configuration."""
    model_config = config['model']
    model_type = model_config['type']
    max_n_stripes = model_config.get('max_n_stripes', 1)
    supervisor = DefaultMeanFieldSupervisor(**model_config.get('mean_field', {}))
    kwargs = {
        'clouds': model_config.get('clouds'),
        'default_clouds': model_config.get('default_clouds', True),
        'max_n_stripes': max_n_stripes,
        'mean_field_supervisor': supervisor,
    }

    if model_type == 'dbm':
        if 'layers' not in model_config:
            raise ValueError("DBM configuration requires 'layers'")
        layers = _build_chunks(model_config['layers'], max_n_stripes)
        bm = DeepBoltzmannMachine(layers, **kwargs)
    elif model_type in ('bm', 'rbm'):
        if 'visible' not in model_config or 'hidden' not in model_config:
            raise ValueError(f"{model_type.upper()} configuration requires 'visible' and 'hidden'")
        visible, hidden = _build_chunks([model_config['visible'], model_config['hidden']], max_n_stripes)
        cls = RestrictedBoltzmannMachine if model_type == 'rbm' else BoltzmannMachine
        bm = cls(visible, hidden, **kwargs)
    else:
        raise ValueError(f"Unsupported model type: {model_type}")

    logger.info(f"Created {bm}")
    return bm


def _create_sparsity_sources(bm: BoltzmannMachine, specs: Sequence[Dict[str, Any]]):
    sources = []
    for spec in specs:
        spec = dict(spec)
        estimator = spec.pop('estimator', 'normal')
        if estimator == 'normal':
            source_cls = NormalSparsityGradientSource
        elif estimator == 'cheating':
            source_cls = CheatingSparsityGradientSource
        else:
            raise ValueError(f"Unknown sparsity estimator: {estimator}")
        cloud = bm.find_cloud(spec.pop('cloud'))
        chunk = bm.find_chunk(spec.pop('chunk'))
        sources.append(source_cls(cloud, chunk, **spec))
    return sources


def create_learner(bm: BoltzmannMachine, config: Dict[str, Any]) -> BMLearner:
    """Build a CD or PCD learner from the training section of a configuration."""
    training_config = config.get('training', {})
    algorithm = training_config.get('learner', 'cd')
    kwargs = {
        'visible_sampling': training_config.get('visible_sampling'),
        'hidden_sampling': training_config.get('hidden_sampling', 'half-hearted'),
        'n_gibbs': training_config.get('n_gibbs', 1),
        'sparsity_sources': _create_sparsity_sources(bm, training_config.get('sparsity', [])),
        'monitors': [ReconstructionRMSEMonitor()],
    }
    if algorithm == 'cd':
        return RBMCDLearner(bm, **kwargs)
    if algorithm == 'pcd':
        return BMPCDLearner(bm, n_particles=training_config.get('n_particles', 100), **kwargs)
    raise ValueError(f"Unsupported learner: {algorithm}")


def create_optimizer(bm: BoltzmannMachine, config: Dict[str, Any]) -> Tuple[GradientAccumulator, SGDOptimizer]:
    """Build the gradient sink and the optimizer updating bm's weights."""
    training_config = config.get('training', {})
    sink = GradientAccumulator(bm, frozen=training_config.get('frozen', ()))
    optimizer = SGDOptimizer(
        sink,
        learning_rate=training_config.get('learning_rate', 0.01),
        momentum=training_config.get('momentum', 0.9),
        weight_decay=training_config.get('weight_decay', 0.0001),
        no_decay=training_config.get('no_decay', ()),
    )
    return sink, optimizer
