"""Environment profiles.

A profile supplies concrete values for the top-level parameters of a
declaration file. Exactly one profile is used per invocation.

    profiles/prod.yaml:
      profile: prod
      parameters:
        environment: prod
        instance_count: 3
"""

from pathlib import Path
from typing import List, Optional

import yaml

from stackwright.core.errors import LoadError
from stackwright.declarations.models import Profile


class ProfileLoader:
    """Finds and loads profile files next to a declaration file."""

    @staticmethod
    def find_profile_file(declarations_file: Path, name: str) -> Optional[Path]:
        """Find the profile file for a declaration file.

        Search order (first match wins):
        1. {declarations_dir}/profiles/{name}.yaml
        2. {declarations_dir}/profiles/{name}.yml
        3. {declarations_dir}/.stackwright/profiles/{name}.yaml
        """
        base_dir = declarations_file.parent
        candidates = [
            base_dir / "profiles" / f"{name}.yaml",
            base_dir / "profiles" / f"{name}.yml",
            base_dir / ".stackwright" / "profiles" / f"{name}.yaml",
        ]
        for candidate in candidates:
            if candidate.exists():
                return candidate
        return None

    @staticmethod
    def load_profile_file(profile_file: Path, name: str) -> Profile:
        try:
            with open(profile_file) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise LoadError(f"Invalid YAML in profile {profile_file}: {e}") from e

        if not isinstance(data, dict):
            raise LoadError(f"Profile file must be a YAML dictionary: {profile_file}")

        declared = data.get("profile")
        if declared is not None and normalize_profile_name(str(declared)) != name:
            raise LoadError(
                f"Profile file {profile_file} declares profile '{declared}', expected '{name}'"
            )

        parameters = data.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise LoadError(f"'parameters' in {profile_file} must be a dictionary")

        return Profile(name=name, parameters=dict(parameters), source=profile_file)

    @staticmethod
    def list_profiles(declarations_file: Path) -> List[str]:
        names = set()
        for directory in (
            declarations_file.parent / "profiles",
            declarations_file.parent / ".stackwright" / "profiles",
        ):
            if directory.is_dir():
                names.update(p.stem for p in directory.iterdir() if p.suffix in (".yaml", ".yml"))
        return sorted(names)


def normalize_profile_name(name: str) -> str:
    return name.lower().strip()


def load_profile(declarations_file: str | Path, name: str) -> Profile:
    """Load the named profile for a declaration file.

    Raises:
        LoadError: If the profile does not exist or is malformed
    """
    declarations_file = Path(declarations_file)
    name = normalize_profile_name(name)
    if not name:
        raise LoadError("Profile name is required")

    profile_file = ProfileLoader.find_profile_file(declarations_file, name)
    if profile_file is None:
        available = ProfileLoader.list_profiles(declarations_file)
        hint = f" (available: {', '.join(available)})" if available else ""
        raise LoadError(f"Profile '{name}' not found for {declarations_file}{hint}")

    return ProfileLoader.load_profile_file(profile_file, name)
