from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from shared_libs.config_models.inventory_models import InventoryDefinition


class InventoryValidator:
    """Validates the inventory YAML file and returns an InventoryDefinition model."""

    def __init__(self, file_path: Path):
        self.file_path = file_path

    def validate(self) -> Optional[InventoryDefinition]:
        print(f"\n--- Validating Inventory File: {self.file_path} ---")
        if not self.file_path.is_file():
            print(f"❌ Error: inventory file not found at '{self.file_path}'")
            return None

        try:
            import yaml
            with open(self.file_path, "r") as f:
                loaded_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            print(f"❌ Error loading inventory YAML: {e}")
            return None

        if loaded_data is None:
            print("❌ Error: inventory YAML is empty or invalid.")
            return None

        try:
            inventory = InventoryDefinition(**loaded_data)
        except ValidationError as e:
            print("❌ Pydantic Validation Failed for inventory file!")
            print("   Please check the file against the InventoryDefinition model.")
            print("   Error details:")
            print(e)
            return None

        print("✅ Inventory Structure Validation Successful!")
        print(f"   Commands Found: {len(inventory.catalog.commands)}")
        print(f"   Templates Found: {len(inventory.catalog.templates)}")
        print(f"   Controllers Found: {len(inventory.controllers)}")
        print(f"   Relays Found: {len(inventory.relays)}")
        print(f"   Devices Found: {len(inventory.devices)}")
        print(f"   Flows Found: {len(inventory.flows)}")
        return inventory
