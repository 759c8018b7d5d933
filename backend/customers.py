from flask import jsonify, request

from errors import NotFound
from pagination import page_args, pagination_payload
from users import Role, serialize_user

CUSTOMER_FIELDS = ("name", "email", "phone", "password")


def register_customer_routes(app, gate, users) -> None:
    def load_customer(customer_id: str):
        user_document = users.find_by_id(customer_id)
        if not user_document:
            raise NotFound("User not found.")
        return user_document

    @app.route("/customers", methods=["GET"])
    @gate.roles_required(Role.ADMIN)
    def list_customers():
        page, limit = page_args()
        documents, total = users.list(page, limit)
        return jsonify(
            {
                "customers": [serialize_user(document) for document in documents],
                "pagination": pagination_payload(total, page, limit),
            }
        )

    @app.route("/customers/<customer_id>", methods=["GET"])
    @gate.owner_required(users.find_by_id, owner_field="_id", view_arg="customer_id")
    def get_customer(customer_id: str):
        load_customer(customer_id)
        # Aggregates are derived; refresh them before showing.
        users.recalculate_order_stats(customer_id)
        return jsonify(serialize_user(load_customer(customer_id)))

    @app.route("/customers/<customer_id>", methods=["PATCH"])
    @gate.owner_required(users.find_by_id, owner_field="_id", view_arg="customer_id")
    def update_customer(customer_id: str):
        load_customer(customer_id)
        payload = request.get_json(silent=True) or {}
        updates = {key: payload[key] for key in CUSTOMER_FIELDS if key in payload}
        user_document = users.update_profile(customer_id, updates)
        app.logger.info("Updated customer %s", customer_id)
        return jsonify(serialize_user(user_document))

    @app.route("/customers/<customer_id>", methods=["DELETE"])
    @gate.roles_required(Role.ADMIN)
    def delete_customer(customer_id: str):
        # Orders keep their customer reference after the account is gone.
        user_document = users.delete(customer_id)
        if not user_document:
            raise NotFound("User not found.")
        app.logger.info("Deleted customer %s", customer_id)
        return jsonify(serialize_user(user_document))
