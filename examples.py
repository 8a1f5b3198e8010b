# Generate example plots and results
import os

from symcalc import Session, MatplotlibRenderer

os.makedirs("images", exist_ok=True)

# Parabola
renderer = MatplotlibRenderer(output='images/parabola.png', show=False, title='x^2 - 2x')
with Session(plot_handler=renderer) as session:
    session.plot('x^2 - 2x', -1, 3, '1/20', 'type=lines', 'range=[-2, 4]')

# Damped oscillation, sampled from the expression language
renderer = MatplotlibRenderer(output='images/damped.png', show=False, title='Damped oscillation')
with Session({'assign_variables': True}, plot_handler=renderer) as session:
    session.evaluate('decay = 1/5')
    session.evaluate('plot(exp(-decay*x) * cos(3x), 0, 20, "1/10", "fmt-x=%.0f")')

    # Results read back as Python values
    result, messages = session.evaluate('[[1, 2], [3, 4]] * [[0, 1], [1, 0]]')
    print(result, result.value())
