import sys
import dataclasses

import numpy as np
from PySide6 import QtCore, QtWidgets
from PySide6.QtOpenGLWidgets import QOpenGLWidget
from OpenGL.GL import *
from OpenGL.GLU import *

from config import SimulationConfig, load_config
from density import WarningLevel
from diagnostics import configure_logging
from metrics import MetricsReporter
from monitor import ParticleMonitor
from simulation import BoxSimulation

DEFAULT_COLOR = np.array((0.220, 0.533, 1.0))
COLLISION_COLOR = np.array((0.541, 0.0, 0.0))

LABEL_STYLE = ('color: rgb(220,220,220); background-color: rgba(60,60,60,200); '
               'padding:4px; border-radius:4px;')


def fade_to_color(progress):
    """Collision colour at 0, default colour at 1."""
    t = float(np.clip(progress, 0.0, 1.0))
    return tuple(COLLISION_COLOR * (1.0 - t) + DEFAULT_COLOR * t)


class GLWidget(QOpenGLWidget):
    def __init__(self, config, parent=None):
        super().__init__(parent)
        self.setMinimumSize(1000, 700)
        self.timer = QtCore.QTimer(self)
        self.timer.timeout.connect(self.step)
        self.running = False

        # Camera / trackball
        self.distance = 8.0
        self.azimuth = 45.0
        self.elevation = 35.264
        self.last_pos = None

        self.config = config
        self.engine = BoxSimulation(config)
        self.monitor = ParticleMonitor(config)
        self.reporter = MetricsReporter()

        # Performance tracking
        self.frame_count = 0
        self.fps = 0.0
        self.fps_timer = QtCore.QTimer(self)
        self.fps_timer.timeout.connect(self._update_fps)
        self.fps_timer.start(1000)

        self.reset()

    def reset(self, config=None):
        """Rebuild engine bodies and monitor state from the current config."""
        if config is not None:
            self.config = config
        self.engine.configure(self.config)
        self.monitor.reinitialize(self.engine.populate, self.config)
        self.reporter.reset(self.monitor.clock())
        self.reporter.last_density = None
        self.reporter.report_density(self.monitor.density)
        if self.running:
            self.timer.start(int(self.engine.time_step * 1000))
        self.update()

    def initializeGL(self):
        glEnable(GL_DEPTH_TEST)
        glEnable(GL_COLOR_MATERIAL)
        glEnable(GL_BLEND)
        glBlendFunc(GL_SRC_ALPHA, GL_ONE_MINUS_SRC_ALPHA)
        glClearColor(0.059, 0.090, 0.165, 1.0)
        glEnable(GL_LIGHTING)
        glEnable(GL_LIGHT0)
        glLightfv(GL_LIGHT0, GL_POSITION, (10.0, 10.0, 10.0, 1.0))
        glLightfv(GL_LIGHT0, GL_AMBIENT, (0.3, 0.3, 0.3, 1.0))

    def resizeGL(self, w, h):
        glViewport(0, 0, w, h)
        glMatrixMode(GL_PROJECTION)
        glLoadIdentity()
        gluPerspective(45.0, w / max(1.0, h), 0.1, 1000.0)
        glMatrixMode(GL_MODELVIEW)

    def resizeEvent(self, event):
        super().resizeEvent(event)
        self.reposition_labels()

    def paintGL(self):
        glClear(GL_COLOR_BUFFER_BIT | GL_DEPTH_BUFFER_BIT)
        glLoadIdentity()
        # camera transform: orbit
        glTranslatef(0, 0, -self.distance)
        glRotatef(self.elevation, 1, 0, 0)
        glRotatef(self.azimuth, 0, 1, 0)

        self.draw_container()

        fade = self.monitor.fade_progress()
        quad = gluNewQuadric()
        for i, pos in enumerate(self.engine.positions):
            glPushMatrix()
            glTranslatef(*pos)
            glColor3f(*fade_to_color(fade[i] if i < len(fade) else 1.0))
            gluSphere(quad, self.engine.radii[i], 16, 12)
            glPopMatrix()
        gluDeleteQuadric(quad)

    def draw_container(self):
        glDisable(GL_LIGHTING)
        snapshot = self.monitor.density
        if snapshot is not None and snapshot.warning_level is WarningLevel.CRITICAL:
            glColor4f(1.0, 0.3, 0.3, 0.5)
        elif snapshot is not None and snapshot.warning_level is WarningLevel.WARNING:
            glColor4f(1.0, 0.67, 0.0, 0.5)
        else:
            glColor4f(1.0, 1.0, 1.0, 0.3)
        s = self.engine.half_size
        corners = [(x, y, z) for x in (-s, s) for y in (-s, s) for z in (-s, s)]
        glBegin(GL_LINES)
        for a in range(len(corners)):
            for b in range(a + 1, len(corners)):
                # cube edges differ in exactly one coordinate
                if sum(ca != cb for ca, cb in zip(corners[a], corners[b])) == 1:
                    glVertex3f(*corners[a])
                    glVertex3f(*corners[b])
        glEnd()
        glEnable(GL_LIGHTING)

    def start(self):
        if not self.running:
            self.timer.start(int(self.engine.time_step * 1000))
            self.running = True

    def stop(self):
        if self.running:
            self.timer.stop()
            self.running = False

    def step(self):
        self.engine.step()
        self.reporter.record(self.monitor.tick())
        self.frame_count += 1
        self.update()

    # Mouse controls
    def mousePressEvent(self, event):
        self.last_pos = event.position()

    def mouseMoveEvent(self, event):
        if self.last_pos is None:
            self.last_pos = event.position()
            return
        dp = event.position() - self.last_pos
        buttons = event.buttons()
        if buttons & QtCore.Qt.LeftButton:
            self.azimuth += dp.x() * 0.5
            self.elevation += dp.y() * 0.5
            self.elevation = max(-89.9, min(89.9, self.elevation))
        elif buttons & QtCore.Qt.RightButton:
            self.distance += dp.y() * 0.05
            self.distance = max(5.0, min(15.0, self.distance))
        self.last_pos = event.position()
        self.update()

    def wheelEvent(self, event):
        delta = event.angleDelta().y() / 120.0
        self.distance = max(5.0, min(15.0, self.distance * (0.95 ** delta)))
        self.update()

    def reposition_labels(self):
        """Stack overlay labels at the bottom-left of the view."""
        labels = getattr(self, 'overlay_labels', [])
        margin = 12
        y_pos = self.height() - margin
        for label in labels:
            label.adjustSize()
            y_pos -= label.height()
            label.move(margin, y_pos)
            y_pos -= 4

    def _update_fps(self):
        self.fps = self.frame_count
        self.frame_count = 0


class MainWindow(QtWidgets.QMainWindow):
    def __init__(self, config=None):
        super().__init__()
        self.setWindowTitle('Particle Box')
        config = config or SimulationConfig()
        central = QtWidgets.QWidget()
        self.setCentralWidget(central)
        layout = QtWidgets.QHBoxLayout(central)

        self.gl = GLWidget(config, self)
        layout.addWidget(self.gl, 1)

        right_widget = QtWidgets.QWidget()
        right_widget.setMinimumWidth(220)
        right = QtWidgets.QVBoxLayout(right_widget)
        layout.addWidget(right_widget)

        # overlay labels at bottom-left of the GL view
        self.fps_label = self._overlay_label()
        self.collision_label = self._overlay_label()
        self.speed_label = self._overlay_label()
        self.active_label = self._overlay_label()
        self.density_label = self._overlay_label()
        self.gl.overlay_labels = [self.fps_label, self.collision_label, self.speed_label,
                                  self.active_label, self.density_label]

        reporter = self.gl.reporter
        reporter.on_active_particles_change = self.on_active_particles
        reporter.on_speed_update = self.on_speed
        reporter.on_collision_count_update = self.on_collisions
        reporter.on_density_warning = self.on_density
        self.on_density(self.gl.monitor.density)
        self.on_active_particles(config.particle_count)
        self.on_speed(0.0)
        self.on_collisions(0)
        self.gl.timer.timeout.connect(self._update_fps_label)

        frm = QtWidgets.QFormLayout()
        self.count_spin = QtWidgets.QSpinBox()
        self.count_spin.setRange(1, 5000)
        self.count_spin.setValue(config.particle_count)
        frm.addRow('Particles:', self.count_spin)

        self.size_spin = self._double_spin(0.01, 0.5, 0.01, config.particle_size, ' m')
        frm.addRow('Particle radius:', self.size_spin)

        self.velocity_spin = self._double_spin(0.0, 10.0, 0.1, config.initial_velocity, ' m/s')
        frm.addRow('Initial speed:', self.velocity_spin)

        self.restitution_spin = self._double_spin(0.0, 1.0, 0.001, config.restitution)
        self.restitution_spin.setDecimals(3)
        frm.addRow('Restitution:', self.restitution_spin)

        self.friction_spin = self._double_spin(0.0, 1.0, 0.01, config.friction_coefficient)
        self.friction_spin.setDecimals(3)
        frm.addRow('Friction:', self.friction_spin)

        self.pp_friction_check = QtWidgets.QCheckBox()
        self.pp_friction_check.setChecked(config.particle_particle_friction)
        frm.addRow('Particle friction:', self.pp_friction_check)

        self.wall_friction_check = QtWidgets.QCheckBox()
        self.wall_friction_check.setChecked(config.particle_wall_friction)
        frm.addRow('Wall friction:', self.wall_friction_check)

        self.gravity_check = QtWidgets.QCheckBox()
        self.gravity_check.setChecked(config.gravity)
        frm.addRow('Gravity:', self.gravity_check)

        self.fade_spin = self._double_spin(0.1, 5.0, 0.1, config.collision_fade_duration, ' s')
        frm.addRow('Collision fade:', self.fade_spin)

        self.dynamic_check = QtWidgets.QCheckBox()
        self.dynamic_check.setChecked(config.dynamic_container_size)
        frm.addRow('Dynamic container:', self.dynamic_check)

        for spin in (self.count_spin, self.size_spin, self.velocity_spin,
                     self.restitution_spin, self.friction_spin, self.fade_spin):
            spin.valueChanged.connect(self.on_config_changed)
        for check in (self.pp_friction_check, self.wall_friction_check,
                      self.gravity_check, self.dynamic_check):
            check.toggled.connect(self.on_config_changed)

        right.addLayout(frm)

        btns = QtWidgets.QHBoxLayout()
        self.start_btn = QtWidgets.QPushButton('Start')
        self.start_btn.clicked.connect(self.on_start)
        btns.addWidget(self.start_btn)
        self.stop_btn = QtWidgets.QPushButton('Stop')
        self.stop_btn.clicked.connect(self.on_stop)
        btns.addWidget(self.stop_btn)
        self.reset_btn = QtWidgets.QPushButton('Reset')
        self.reset_btn.clicked.connect(self.on_reset)
        btns.addWidget(self.reset_btn)
        right.addLayout(btns)

        spacer = QtWidgets.QSpacerItem(20, 20, QtWidgets.QSizePolicy.Minimum,
                                       QtWidgets.QSizePolicy.Expanding)
        right.addItem(spacer)

        self.status = QtWidgets.QLabel('Ready')
        right.addWidget(self.status)

        # start paused
        self.gl.stop()

    def _overlay_label(self):
        label = QtWidgets.QLabel(self.gl)
        label.setStyleSheet(LABEL_STYLE)
        label.show()
        return label

    def _double_spin(self, low, high, step, value, suffix=''):
        spin = QtWidgets.QDoubleSpinBox()
        spin.setRange(low, high)
        spin.setSingleStep(step)
        spin.setValue(value)
        if suffix:
            spin.setSuffix(suffix)
        return spin

    def current_config(self):
        return dataclasses.replace(
            self.gl.config,
            particle_count=self.count_spin.value(),
            particle_size=self.size_spin.value(),
            initial_velocity=self.velocity_spin.value(),
            restitution=self.restitution_spin.value(),
            friction_coefficient=self.friction_spin.value(),
            particle_particle_friction=self.pp_friction_check.isChecked(),
            particle_wall_friction=self.wall_friction_check.isChecked(),
            gravity=self.gravity_check.isChecked(),
            collision_fade_duration=self.fade_spin.value(),
            dynamic_container_size=self.dynamic_check.isChecked(),
        )

    def on_config_changed(self, _value=None):
        try:
            config = self.current_config().validate()
        except ValueError as err:
            self.status.setText(str(err))
            return
        self.gl.reset(config)
        self.status.setText('Running' if self.gl.running else 'Ready')

    def on_active_particles(self, count):
        self.active_label.setText(f"Active particles: {count}")
        self.gl.reposition_labels()

    def on_speed(self, speed):
        self.speed_label.setText(f"Mean speed: {speed:.3f} m/s")
        self.gl.reposition_labels()

    def on_collisions(self, count):
        self.collision_label.setText(f"Collisions / 0.5 s: {count}")
        self.gl.reposition_labels()

    def on_density(self, snapshot):
        if snapshot is None:
            return
        text = f"Packing: {snapshot.packing_ratio * 100:.1f}%"
        if snapshot.warning_level is not WarningLevel.NONE:
            text += (f" ({snapshot.warning_level.value}, "
                     f"max {snapshot.max_allowable_particles} particles)")
        self.density_label.setText(text)
        self.gl.reposition_labels()

    def _update_fps_label(self):
        self.fps_label.setText(f"FPS: {self.gl.fps:.0f}")
        self.gl.reposition_labels()

    def on_start(self):
        self.gl.start()
        self.status.setText('Running')

    def on_stop(self):
        self.gl.stop()
        self.status.setText('Stopped')

    def on_reset(self):
        self.gl.reset()


def main():
    configure_logging()
    config = load_config(sys.argv[1]) if len(sys.argv) > 1 else SimulationConfig()
    app = QtWidgets.QApplication(sys.argv)
    w = MainWindow(config)
    w.show()
    sys.exit(app.exec())


if __name__ == '__main__':
    main()
