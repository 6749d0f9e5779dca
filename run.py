from cardleague import create_app, db
from cardleague.models import Card, Game, League, LeagueMember, Pick, User

app = create_app()


@app.shell_context_processor
def make_shell_context():
    return {
        "db": db,
        "User": User,
        "League": League,
        "LeagueMember": LeagueMember,
        "Game": Game,
        "Card": Card,
        "Pick": Pick,
    }


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5000, debug=True)
