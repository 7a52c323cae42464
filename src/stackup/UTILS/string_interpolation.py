"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Any, Dict, Mapping

from ..errors import DescriptorError

logger = logging.getLogger(__name__)

# $$ | $NAME | ${NAME} | ${NAME<op>word} with op in :- - :+ + :? ?
_PATTERN = re.compile(
    r"\$(?:(?P<escaped>\$)"
    r"|(?P<plain>[A-Za-z_][A-Za-z0-9_]*)"
    r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<op>:?[-+?])(?P<word>[^}]*))?\})"
)


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR+value}, ${VAR:?message}, ${VAR?message} and the $$ escape.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        An unset variable without a default becomes an empty string, with a warning.

        :param template: The string containing $VAR or ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises DescriptorError: If a ${VAR:?message} variable is unset or empty.
        """
        def replace(match):
            if match.group("escaped"):
                return "$"
            name = match.group("plain") or match.group("braced")
            op = match.group("op")
            word = match.group("word") or ""
            value = context.get(name)

            if op is None:
                if value is None:
                    logger.warning("The %s variable is not set. Defaulting to a blank string.", name)
                    return ""
                return value

            # The colon forms also treat an empty value as unset
            unset = value is None or (op.startswith(":") and value == "")
            kind = op[-1]
            if kind == "-":
                return word if unset else value
            if kind == "+":
                return "" if unset else word
            if unset:
                raise DescriptorError(f"Required variable {name} is missing a value: {word}", resource=name)
            return value

        return _PATTERN.sub(replace, template)

    @classmethod
    def interpolate_data(cls, data: Any, context: Mapping[str, str]) -> Any:
        """
        Interpolates every string value of a parsed YAML document. Keys are left alone.

        :param data: Parsed YAML (dicts, lists and scalars).
        :param context: The environment variables context.
        :return: A new structure with interpolated strings.
        """
        if isinstance(data, str):
            return cls.interpolate(data, context)
        if isinstance(data, dict):
            return {key: cls.interpolate_data(value, context) for key, value in data.items()}
        if isinstance(data, list):
            return [cls.interpolate_data(item, context) for item in data]
        return data


def build_context(dotenv: Dict[str, str], environ: Mapping[str, str]) -> Dict[str, str]:
    """
    Interpolation context: values from the .env file, overridden by the process environment.
    """
    context = dict(dotenv)
    context.update(environ)
    return context
