from pathlib import Path

from flowbuild.validation.inventory import InventoryValidator
from flowbuild.validation.cross import CrossValidator


def main(inventory_file: Path | None = None) -> None:
    config_base_dir = Path(__file__).parent.parent / "config_sources"
    inventory_file = inventory_file or config_base_dir / "system_definition.yaml"

    inventory = InventoryValidator(inventory_file).validate()
    if inventory is None:
        raise SystemExit(1)

    if not CrossValidator(inventory).validate():
        raise SystemExit(1)


if __name__ == "__main__":
    main()
