from typing import Dict, List

from shared_libs.config_models.catalog_models import PhysicalType
from shared_libs.config_models.inventory_models import InventoryDefinition
from shared_libs.config_models.topology_models import DirectBinding
from shared_libs.flow_core.graph import build_graph
from shared_libs.hardware_core.catalog import CapabilityCatalog
from shared_libs.hardware_core.compiler import CommandCompiler
from shared_libs.hardware_core.errors import HydroflowError
from shared_libs.hardware_core.topology import TopologyStore


class CrossValidator:
    """Performs cross-reference checks between catalog, topology, devices and flows."""

    def __init__(self, inventory: InventoryDefinition):
        self.inventory = inventory

    def validate(self) -> bool:
        print("\n--- Performing Cross-Validation ---")
        errors: Dict[str, List[str]] = {
            "catalog_ref": [],
            "topology_ref": [],
            "allocation": [],
            "compilation": [],
            "flows": [],
        }
        catalog = CapabilityCatalog.from_definition(self.inventory.catalog)
        controller_ids = {c.id for c in self.inventory.controllers}
        relay_ids = {r.id for r in self.inventory.relays}

        # Templates reference known commands
        print("\nChecking template command references against the catalog...")
        for template in catalog.templates.values():
            commands = [template.command_name] if template.command_name else []
            commands += [s.command for s in template.execution_config.command_sequence]
            for command in commands:
                if catalog.get_command(command) is None:
                    errors["catalog_ref"].append(f"Template '{template.type}' references undefined command '{command}'.")
        if not errors["catalog_ref"]:
            print("   ✅ Template command references exist in the catalog.")

        # Devices reference known templates, controllers and relays
        print("\nChecking device and relay references...")
        for relay in self.inventory.relays:
            if relay.controller_id not in controller_ids:
                errors["topology_ref"].append(f"Relay '{relay.id}' references undefined controller '{relay.controller_id}'.")
        for device in self.inventory.devices:
            if catalog.get_template(device.template) is None:
                errors["catalog_ref"].append(f"Device '{device.id}' references undefined template '{device.template}'.")
            binding = device.binding
            if isinstance(binding, DirectBinding):
                if binding.controller_id not in controller_ids:
                    errors["topology_ref"].append(f"Device '{device.id}' references undefined controller '{binding.controller_id}'.")
            elif binding.relay_id not in relay_ids:
                errors["topology_ref"].append(f"Device '{device.id}' references undefined relay '{binding.relay_id}'.")
        if not errors["topology_ref"]:
            print("   ✅ Device and relay references appear valid.")

        # Port allocation and command compilation, only if references are sound
        if not errors["topology_ref"] and not errors["catalog_ref"]:
            print("\nChecking port allocation and command compilation...")
            compiler = CommandCompiler(catalog)
            try:
                topology = TopologyStore(self.inventory.controllers, self.inventory.relays)
            except HydroflowError as e:
                errors["allocation"].append(f"Relay wiring: {e}")
                topology = None
            for device in self.inventory.devices if topology is not None else []:
                template = catalog.get_template(device.template)
                try:
                    topology.bind_device(device, template)
                except HydroflowError as e:
                    errors["allocation"].append(str(e))
                    continue
                if not device.enabled:
                    continue
                # Actuators are checked with the OFF state filled in
                action = None
                if template.physical_type == PhysicalType.ACTUATOR:
                    action = {template.execution_config.state_parameter: 0}
                try:
                    compiler.compile_plan(template, topology.resolve(device, template), action)
                except HydroflowError as e:
                    errors["compilation"].append(str(e))
            if not errors["allocation"]:
                print("   ✅ No port or channel conflicts.")
            if not errors["compilation"]:
                print("   ✅ Every enabled device compiles to a complete command.")

        # Flow graphs
        print("\nChecking flow graphs...")
        devices = {d.id: d for d in self.inventory.devices}
        for flow in self.inventory.flows:
            try:
                build_graph(flow, devices, catalog)
            except HydroflowError as e:
                errors["flows"].extend(getattr(e, "problems", [str(e)]))
        if not errors["flows"]:
            print("   ✅ All flows validate.")

        if any(errors.values()):
            print("\n❌ Cross-Validation Failed!")
            for category, messages in errors.items():
                if messages:
                    print(f"   --- {category} ---")
                    for msg in messages:
                        print(f"      - {msg}")
            return False
        print("\n✅ All Cross-Validation Checks Passed.")
        return True
