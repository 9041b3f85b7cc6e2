from edulure_sync import create_app

app = create_app()

# Run the scheduler in one worker only: gunicorn -w 1 wsgi:app with SCHEDULER_ENABLED=true,
# and SCHEDULER_ENABLED=false everywhere else.
