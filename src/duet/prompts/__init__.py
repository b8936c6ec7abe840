"""Prompt catalog and builders.

Instruction text lives in ``templates.yaml`` (next to this package) and is
loaded by :class:`PromptCatalog`; :mod:`duet.prompts.builders` combines it
with run inputs into the text sent to each agent.
"""

from duet.prompts.catalog import PromptCatalog

__all__ = ["PromptCatalog"]
