from lendingdesk.main import app

app(prog_name="lendingdesk")
