from zen.templates.engine import CompiledTemplateCache, TemplateBinding, TemplateEngine
from zen.templates.functions import TemplateFunctions
from zen.templates.validator import VariableProblem, apply_defaults, validate

__all__ = [
    "CompiledTemplateCache",
    "TemplateBinding",
    "TemplateEngine",
    "TemplateFunctions",
    "VariableProblem",
    "apply_defaults",
    "validate",
]
