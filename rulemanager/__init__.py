"""
rulemanager - Rule-driven pipeline job scheduler

Decides which analyses are ready for each input id from a table of
dependency rules, creates and tracks jobs, submits them to a batch
system and feeds their outcomes back into the pipeline database.
"""

__version__ = "0.1.0"
__author__ = "Pipeline Team"


__all__ = ["RuleManagerConfig", "load_config", "get_rulemanager_home"]

from .config import RuleManagerConfig, load_config, get_rulemanager_home
