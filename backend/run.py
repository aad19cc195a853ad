"""Application entry point."""
import os

import click
from dotenv import load_dotenv
from flask.cli import with_appcontext

# Load environment variables before config classes read them
load_dotenv()

from secure_attendance import create_app, db  # noqa: E402

# Create Flask app
app = create_app(os.getenv('FLASK_ENV', 'development'))


@app.cli.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create a demo teacher, student, course and enrollment."""
    from secure_attendance.models import Course, Enrollment, User, UserRole

    teacher = User.query.filter_by(email='teacher@university.edu').first()
    if not teacher:
        teacher = User(email='teacher@university.edu', name='Demo Teacher', role=UserRole.TEACHER)
        db.session.add(teacher)

    student = User.query.filter_by(email='student@university.edu').first()
    if not student:
        student = User(email='student@university.edu', name='Demo Student',
                       student_number='S0001', role=UserRole.STUDENT)
        db.session.add(student)
    db.session.flush()

    course = Course.query.filter_by(code='CS101').first()
    if not course:
        course = Course(code='CS101', title='Introduction to Computing', instructor_id=teacher.id)
        db.session.add(course)
        db.session.flush()

    if not Enrollment.query.filter_by(course_id=course.id, student_id=student.id).first():
        db.session.add(Enrollment(course_id=course.id, student_id=student.id))

    db.session.commit()
    click.echo(f'Teacher id={teacher.id}, student id={student.id}, course id={course.id}')


@app.cli.command('reset-db')
@with_appcontext
def reset_db():
    """Reset database completely."""
    if click.confirm('This will delete all data and recreate tables. Continue?'):
        db.drop_all()
        db.create_all()
        click.echo('Database reset complete!')


if __name__ == '__main__':
    # Development server
    port = int(os.environ.get('PORT', 5000))
    host = os.environ.get('HOST', '127.0.0.1')
    debug = os.environ.get('FLASK_ENV') == 'development'

    app.run(host=host, port=port, debug=debug)
