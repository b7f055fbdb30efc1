from sosdispatch import create_app, db
from sosdispatch.models import Ambulance, Emergency, Hospital, HospitalNotification, PoliceRequest

app = create_app()

@app.shell_context_processor
def make_shell_context():
    return {
        'db': db,
        'Hospital': Hospital,
        'Ambulance': Ambulance,
        'Emergency': Emergency,
        'HospitalNotification': HospitalNotification,
        'PoliceRequest': PoliceRequest
    }

if __name__ == '__main__':
    app.run(debug=True)
