"""Command line interface for testing configuration loading"""
from . import settings_conf, DEFAULTS
from pathlib import Path

def main():
    """Display loaded configuration and write an example settings file"""
    print("\nSettings Configuration:")
    print("-" * 50)
    for key, value in settings_conf.items():
        if key == 'jwt_secret' and value:
            value = '********'
        print(f"{key}: {value}")

    example = Path("settings.conf.example")
    if not example.exists():
        lines = ["[DEFAULT]"]
        lines.extend(f"{key} = {value}" for key, value in DEFAULTS.items())
        example.write_text("\n".join(lines) + "\n")
        print(f"\nWrote {example}")

if __name__ == "__main__":
    main()
