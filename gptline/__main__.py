from gptline.cli import run

run()
