from inventory_service import availability, ledger
from shared.dispatch import CommandTable

commands = CommandTable("inventory")

commands.register("check_availability")(availability.check)
commands.register("list_products")(ledger.list_items)
commands.register("create_product")(ledger.create_item)
commands.register("get_product")(ledger.get)
commands.register("reserve")(ledger.reserve)
commands.register("release")(ledger.release)
commands.register("update_product")(ledger.update_item)
commands.register("restock")(ledger.restock)
