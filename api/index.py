from flask import Flask, request, jsonify
from flask_cors import CORS
# settlement.py and config.py live next to this file in the 'api' folder
from settlement import (
    Expense, InvalidExpenseError, Share, calculate_settlements, describe_transfer,
    equal_split, trip_statistics,
)
from config import Config

SQUARE_MESSAGE = "No settlements needed! Everyone is square."


class PayloadError(ValueError):
    """Request body does not have the shape the API expects."""


def _first(item, *keys):
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def parse_expense(item):
    """Build an Expense from one JSON object of the request body."""
    if not isinstance(item, dict):
        raise PayloadError("Each expense must be a JSON object")

    payer = _first(item, 'payerId', 'paidBy', 'payer')
    amount = item.get('amount')
    if payer is None or amount is None:
        raise PayloadError("Each expense needs a payer and an amount")

    shares = _first(item, 'shares', 'splitBetween')
    involved = item.get('involved')
    if shares is not None:
        if not isinstance(shares, list):
            raise PayloadError("'shares' must be a list")
        try:
            shares = [Share(str(s['userId']), s['amount']) for s in shares]
        except (KeyError, TypeError):
            raise PayloadError("Each share needs a userId and an amount")
    elif involved is not None:
        # Older clients only send who was involved and expect an even split
        if not isinstance(involved, list):
            raise PayloadError("'involved' must be a list")
        shares = equal_split(amount, [str(person) for person in involved])
    else:
        shares = ()

    return Expense(
        str(payer), amount, shares,
        description=str(item.get('description') or item.get('name') or ''),
        category=str(item.get('category') or 'other'),
    )


def parse_request(data):
    """Return (expenses, members, currency) from a request body."""
    if isinstance(data, list):
        data = {'expenses': data}
    if not isinstance(data, dict):
        raise PayloadError("Request body must be a JSON object or a list of expenses")

    items = data.get('expenses') or []
    if not isinstance(items, list):
        raise PayloadError("'expenses' must be a list")

    members = data.get('members') or {}
    if isinstance(members, list):
        members = {str(m): str(m) for m in members}
    if not isinstance(members, dict):
        raise PayloadError("'members' must be an object of id -> display name")

    return [parse_expense(item) for item in items], members, data.get('currency')


def money(amount):
    return f"{amount:.2f}"


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    app.json.sort_keys = False
    app.logger.setLevel(app.config['LOG_LEVEL'])

    CORS(app, resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}})

    def read_body():
        data = request.get_json(silent=True)
        if data is None:
            raise PayloadError("Request body must be JSON")
        return parse_request(data)

    # --- 1. HEALTH CHECK ROUTE ---
    @app.route('/api', methods=['GET'])
    def health_check():
        return jsonify({"status": "healthy", "message": "Backend is running!"})

    # --- 2. CALCULATION ROUTE ---
    @app.route('/api/calculate', methods=['POST'])
    def calculate():
        expenses, members, currency = read_body()
        currency = currency or app.config['DEFAULT_CURRENCY']

        balances, transfers = calculate_settlements(
            expenses,
            empty_shares=app.config['EMPTY_SHARES_POLICY'],
            tolerance=app.config['SHARE_TOLERANCE'],
        )
        app.logger.info("Calculated %d settlements from %d expenses", len(transfers), len(expenses))

        settlements = []
        for t in transfers:
            settlements.append({
                "fromUserId": t.from_user_id,
                "toUserId": t.to_user_id,
                "amount": money(t.amount),
                "from": members.get(t.from_user_id) or t.from_user_id,
                "to": members.get(t.to_user_id) or t.to_user_id,
                "message": describe_transfer(t, members, currency),
            })

        return jsonify({
            "currency": currency,
            "balances": {user_id: money(amount) for user_id, amount in balances.items()},
            "settlements": settlements,
            "summary": [s["message"] for s in settlements] or [SQUARE_MESSAGE],
        })

    # --- 3. TRIP STATISTICS ROUTE ---
    @app.route('/api/statistics', methods=['POST'])
    def statistics():
        expenses, members, currency = read_body()
        stats = trip_statistics(expenses, members or None)

        return jsonify({
            "currency": currency or app.config['DEFAULT_CURRENCY'],
            "totalAmount": money(stats['total_amount']),
            "totalExpenses": stats['total_expenses'],
            "memberCount": stats['member_count'],
            "averagePerPerson": money(stats['average_per_person']),
            "expensesByCategory": {
                k: {"count": v['count'], "total": money(v['total'])} for k, v in stats['by_category'].items()
            },
            "expensesByMember": {
                members.get(k) or k: {"count": v['count'], "total": money(v['total'])}
                for k, v in stats['by_payer'].items()
            },
        })

    @app.errorhandler(InvalidExpenseError)
    def invalid_expense(e):
        app.logger.warning("Rejected expense: %s", e.message)
        body = {"error": e.message}
        if e.expense is not None:
            body["expense"] = {"payerId": e.expense.payer_id, "amount": money(e.expense.amount)}
        return jsonify(body), 400

    @app.errorhandler(PayloadError)
    def bad_payload(e):
        app.logger.warning("Bad payload: %s", e)
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(500)
    def server_error(e):
        # Returns the error message to the frontend if something crashes
        original = getattr(e, 'original_exception', None) or e
        app.logger.error("Settlement calculation failed", exc_info=original)
        return jsonify({"error": str(original)}), 500

    return app


app = create_app()

# Vercel ignores this block, but it's useful for local testing
if __name__ == '__main__':
    app.run(debug=True, port=5000)
