from order_service.services import order_service
from shared.dispatch import CommandTable

commands = CommandTable("orders")

commands.register("create_order")(order_service.create_order)
commands.register("get_order")(order_service.get_order)
commands.register("list_orders")(order_service.list_orders)
commands.register("get_invoice")(order_service.build_invoice)


@commands.register("check_availability")
async def check_availability(items, request_id, inventory):
    return await inventory.check_availability(items, request_id)
